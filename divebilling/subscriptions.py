"""Subscription store adapter.

The only module that reads or writes ``subscriptions`` and
``subscription_plans`` rows. Status changes go through
``apply_status_if_pending``, a single conditional UPDATE, so that concurrent
reconcilers (possibly in different processes) produce at most one transition.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from divebilling import models
from divebilling.errors import PlanNotFound, StoreUnavailable
from divebilling.status import STATUS_PAID, STATUS_PENDING

logger = logging.getLogger(__name__)

SOURCE_CHECKOUT = "checkout"
SOURCE_WEBHOOK = "webhook"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if getattr(value, "tzinfo", None):
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def normalize_email(email: Optional[str]) -> str:
    return str(email or "").strip().lower()


def compute_expiry(start: datetime, interval_days: int) -> datetime:
    return normalize_datetime(start) + timedelta(days=int(interval_days))


@contextmanager
def _store_guard(db: Session, action: str):
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Subscription store failure action=%s", action)
        raise StoreUnavailable(f"Subscription store unavailable during {action}.") from exc


def list_active_plans(db: Session) -> list[models.SubscriptionPlan]:
    with _store_guard(db, "list_plans"):
        return (
            db.query(models.SubscriptionPlan)
            .filter(models.SubscriptionPlan.active.is_(True))
            .order_by(models.SubscriptionPlan.price.asc(), models.SubscriptionPlan.id.asc())
            .all()
        )


def get_active_plan(db: Session, plan_id: str) -> models.SubscriptionPlan:
    with _store_guard(db, "get_plan"):
        plan = db.query(models.SubscriptionPlan).filter(models.SubscriptionPlan.id == plan_id).first()
    if not plan or not plan.active:
        raise PlanNotFound(f"Plan {plan_id} not found.")
    return plan


def get_default_plan(db: Session, preferred_plan_id: Optional[str] = None) -> models.SubscriptionPlan:
    """Pick the plan for records created outside the checkout flow.

    The preferred plan wins when it is active; otherwise there must be exactly
    one active plan.
    """
    if preferred_plan_id:
        try:
            return get_active_plan(db, preferred_plan_id)
        except PlanNotFound:
            logger.warning("Configured default plan is unavailable plan_id=%s", preferred_plan_id)

    plans = list_active_plans(db)
    if len(plans) != 1:
        raise PlanNotFound(f"Expected exactly one active plan, found {len(plans)}.")
    return plans[0]


def find_by_transaction_ref(db: Session, transaction_ref: str) -> Optional[models.Subscription]:
    with _store_guard(db, "find"):
        return (
            db.query(models.Subscription)
            .filter(models.Subscription.transaction_ref == transaction_ref)
            .first()
        )


def insert_subscription(
    db: Session,
    *,
    email: str,
    plan: models.SubscriptionPlan,
    transaction_ref: str,
    status: str,
    expires_at: datetime,
    source: str = SOURCE_CHECKOUT,
    now: Optional[datetime] = None,
) -> tuple[models.Subscription, bool]:
    """Insert a record keyed by ``transaction_ref``.

    Returns ``(record, created)``. A duplicate reference is not an error: the
    existing record is returned with ``created=False``.
    """
    now = normalize_datetime(now) or utcnow()
    subscription = models.Subscription(
        email=normalize_email(email),
        plan_id=plan.id,
        transaction_ref=transaction_ref,
        status=status,
        source=source,
        expires_at=normalize_datetime(expires_at),
        created_at=now,
        updated_at=now,
    )

    with _store_guard(db, "insert"):
        db.add(subscription)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = find_by_transaction_ref(db, transaction_ref)
            if existing is None:
                raise
            if existing.email != subscription.email or existing.plan_id != plan.id:
                logger.warning(
                    "Duplicate transaction ref with different details ref=%s existing_plan=%s new_plan=%s",
                    transaction_ref,
                    existing.plan_id,
                    plan.id,
                )
            logger.info("Subscription already recorded ref=%s status=%s", transaction_ref, existing.status)
            return existing, False

        db.refresh(subscription)
        return subscription, True


def apply_status_if_pending(
    db: Session,
    transaction_ref: str,
    new_status: str,
    now: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
) -> bool:
    """Move a ``pending`` record to ``new_status`` in one conditional write.

    Returns True when this call performed the transition, False when no
    pending row matched (already final, or another writer got there first).
    """
    now = normalize_datetime(now) or utcnow()
    values = {
        models.Subscription.status: new_status,
        models.Subscription.updated_at: now,
    }
    if expires_at is not None:
        values[models.Subscription.expires_at] = normalize_datetime(expires_at)

    with _store_guard(db, "update_status"):
        updated = (
            db.query(models.Subscription)
            .filter(
                models.Subscription.transaction_ref == transaction_ref,
                models.Subscription.status == STATUS_PENDING,
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
    return updated == 1


def get_active_subscription(
    db: Session,
    email: str,
    now: Optional[datetime] = None,
) -> Optional[models.Subscription]:
    now = normalize_datetime(now) or utcnow()
    with _store_guard(db, "active_subscription"):
        return (
            db.query(models.Subscription)
            .filter(
                models.Subscription.email == normalize_email(email),
                models.Subscription.status == STATUS_PAID,
                models.Subscription.expires_at >= now,
            )
            .order_by(models.Subscription.created_at.desc(), models.Subscription.id.desc())
            .first()
        )


def has_active_subscription(db: Session, email: str, now: Optional[datetime] = None) -> bool:
    return get_active_subscription(db, email, now=now) is not None
