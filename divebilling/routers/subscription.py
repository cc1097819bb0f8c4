from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from divebilling import schemas, webhooks
from divebilling import subscriptions as store
from divebilling.database import get_db
from divebilling.gateway import WOMPI_CURRENCY, WompiClient, get_gateway_client
from divebilling.reconciliation import initiate_payment, verify_transaction

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@router.get("/plans", response_model=schemas.PlanListResponse)
def list_plans(db: Session = Depends(get_db)):
    plans = store.list_active_plans(db)
    return schemas.PlanListResponse(
        currency=WOMPI_CURRENCY,
        plans=[schemas.PlanResponse.model_validate(plan) for plan in plans],
    )


@router.post("/initiate", status_code=201, response_model=schemas.PaymentInitiateResponse)
def initiate_subscription_payment(
    payload: schemas.PaymentInitiateRequest,
    db: Session = Depends(get_db),
    client: WompiClient = Depends(get_gateway_client),
):
    result = initiate_payment(
        db,
        client,
        email=payload.email,
        plan_id=payload.plan_id.strip(),
        redirect_url=payload.redirect_url,
    )
    return schemas.PaymentInitiateResponse(
        transaction_ref=result.transaction_ref,
        checkout_url=result.checkout_url,
        status=result.subscription.status,
        expires_at=result.subscription.expires_at,
    )


@router.post("/verify", response_model=schemas.PaymentVerifyResponse)
def verify_subscription_payment(
    payload: schemas.PaymentVerifyRequest,
    db: Session = Depends(get_db),
    client: WompiClient = Depends(get_gateway_client),
):
    outcome = verify_transaction(db, client, payload.transaction_ref.strip())
    subscription = outcome.subscription
    return schemas.PaymentVerifyResponse(
        transaction_ref=outcome.transaction_ref,
        status=outcome.status,
        gateway_status=outcome.gateway_status,
        expires_at=(subscription.expires_at if subscription is not None else None),
    )


@router.get("/status", response_model=schemas.SubscriptionStatusResponse)
def get_subscription_status(
    email: str = Query(min_length=3, max_length=320),
    db: Session = Depends(get_db),
):
    normalized_email = store.normalize_email(email)
    subscription = store.get_active_subscription(db, normalized_email)
    return schemas.SubscriptionStatusResponse(
        email=normalized_email,
        active=subscription is not None,
        subscription=(
            schemas.SubscriptionResponse.model_validate(subscription) if subscription is not None else None
        ),
    )


@router.post("/webhook/wompi")
async def wompi_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    body = await request.body()
    event = webhooks.parse_event(body)
    webhooks.check_signature(event)
    return webhooks.handle_event(db, event)
