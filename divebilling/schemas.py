from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: int
    interval_days: int

    class Config:
        from_attributes = True


class PlanListResponse(BaseModel):
    currency: str
    plans: List[PlanResponse] = []


class PaymentInitiateRequest(BaseModel):
    email: EmailStr
    plan_id: str = Field(min_length=1, max_length=64)
    redirect_url: Optional[str] = None


class PaymentInitiateResponse(BaseModel):
    transaction_ref: str
    checkout_url: Optional[str] = None
    status: str
    expires_at: datetime


class PaymentVerifyRequest(BaseModel):
    transaction_ref: str = Field(min_length=1, max_length=255)


class PaymentVerifyResponse(BaseModel):
    transaction_ref: str
    status: str
    gateway_status: Optional[str] = None
    expires_at: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    email: str
    plan_id: str
    transaction_ref: str
    status: str
    source: str
    expires_at: datetime
    updated_at: datetime
    plan: Optional[PlanResponse] = None

    class Config:
        from_attributes = True


class SubscriptionStatusResponse(BaseModel):
    email: str
    active: bool
    subscription: Optional[SubscriptionResponse] = None
