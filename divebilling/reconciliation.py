"""Payment reconciliation engine.

``initiate_payment`` creates the remote transaction and a ``pending``
subscription keyed by its id. ``reconcile_transaction`` merges a gateway
status into that subscription and is shared by the webhook and the
verification paths; ``verify_transaction`` is the client-driven path.

State machine::

    pending -> paid
    pending -> failed

``paid`` and ``failed`` are final. Either path may fire first, twice, or not at
all; the conditional write in the store keeps the outcome the same.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from divebilling import models
from divebilling import subscriptions as store
from divebilling.errors import OrphanedPayment, PlanNotFound
from divebilling.gateway import WOMPI_CURRENCY, WompiClient
from divebilling.status import STATUS_PAID, STATUS_PENDING, is_terminal, map_status

load_dotenv()

logger = logging.getLogger(__name__)

EXPIRY_ANCHOR_CREATED = "created"
EXPIRY_ANCHOR_PAID = "paid"

ACTION_UPDATED = "updated"
ACTION_ALREADY_FINAL = "already_final"
ACTION_LOST_RACE = "lost_race"
ACTION_STILL_PENDING = "still_pending"
ACTION_IGNORED_UNKNOWN = "ignored_unknown"
ACTION_CREATED_OUT_OF_BAND = "created_out_of_band"


def _payment_redirect_url() -> Optional[str]:
    return os.getenv("PAYMENT_REDIRECT_URL", "").strip() or None


def _default_plan_id() -> Optional[str]:
    return os.getenv("DEFAULT_PLAN_ID", "").strip() or None


def _expiry_anchor() -> str:
    anchor = os.getenv("SUBSCRIPTION_EXPIRY_ANCHOR", EXPIRY_ANCHOR_CREATED).strip().lower()
    if anchor not in {EXPIRY_ANCHOR_CREATED, EXPIRY_ANCHOR_PAID}:
        return EXPIRY_ANCHOR_CREATED
    return anchor


@dataclass(frozen=True)
class InitiatedPayment:
    transaction_ref: str
    checkout_url: Optional[str]
    subscription: models.Subscription


@dataclass(frozen=True)
class ReconcileOutcome:
    transaction_ref: str
    status: str
    action: str
    subscription: Optional[models.Subscription] = None
    gateway_status: Optional[str] = None


def initiate_payment(
    db: Session,
    client: WompiClient,
    email: str,
    plan_id: str,
    redirect_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> InitiatedPayment:
    email = store.normalize_email(email)
    plan = store.get_active_plan(db, plan_id)

    # No local row is written unless the gateway accepted the transaction.
    created = client.create_transaction(
        amount_in_cents=int(plan.price) * 100,
        currency=WOMPI_CURRENCY,
        customer_email=email,
        redirect_url=redirect_url or _payment_redirect_url(),
    )

    now = store.normalize_datetime(now) or store.utcnow()
    subscription, inserted = store.insert_subscription(
        db,
        email=email,
        plan=plan,
        transaction_ref=created.transaction_ref,
        status=STATUS_PENDING,
        expires_at=store.compute_expiry(now, plan.interval_days),
        source=store.SOURCE_CHECKOUT,
        now=now,
    )
    logger.info(
        "Payment initiated ref=%s plan_id=%s inserted=%s",
        created.transaction_ref,
        plan.id,
        inserted,
    )
    return InitiatedPayment(
        transaction_ref=created.transaction_ref,
        checkout_url=created.checkout_url,
        subscription=subscription,
    )


def _merge_into_existing(
    db: Session,
    subscription: models.Subscription,
    new_status: str,
    now: datetime,
) -> ReconcileOutcome:
    transaction_ref = subscription.transaction_ref

    if is_terminal(subscription.status):
        return ReconcileOutcome(transaction_ref, subscription.status, ACTION_ALREADY_FINAL, subscription)

    if new_status == STATUS_PENDING:
        return ReconcileOutcome(transaction_ref, STATUS_PENDING, ACTION_STILL_PENDING, subscription)

    expires_at = None
    if new_status == STATUS_PAID and _expiry_anchor() == EXPIRY_ANCHOR_PAID:
        expires_at = store.compute_expiry(now, subscription.plan.interval_days)

    if store.apply_status_if_pending(db, transaction_ref, new_status, now=now, expires_at=expires_at):
        refreshed = store.find_by_transaction_ref(db, transaction_ref)
        logger.info("Subscription reconciled ref=%s status=%s", transaction_ref, new_status)
        return ReconcileOutcome(transaction_ref, refreshed.status, ACTION_UPDATED, refreshed)

    # Zero rows matched: a concurrent reconciler already finalised the record.
    current = store.find_by_transaction_ref(db, transaction_ref)
    current_status = current.status if current is not None else new_status
    logger.info(
        "Subscription already reconciled by another writer ref=%s status=%s",
        transaction_ref,
        current_status,
    )
    return ReconcileOutcome(transaction_ref, current_status, ACTION_LOST_RACE, current)


def _record_out_of_band_payment(
    db: Session,
    transaction_ref: str,
    customer_email: Optional[str],
    now: datetime,
) -> ReconcileOutcome:
    email = store.normalize_email(customer_email)
    if not email:
        raise OrphanedPayment(f"Paid transaction {transaction_ref} has no customer email to attach to.")

    try:
        plan = store.get_default_plan(db, _default_plan_id())
    except PlanNotFound as exc:
        raise OrphanedPayment(
            f"Paid transaction {transaction_ref} has no plan to attach to: {exc.detail}"
        ) from exc

    subscription, created = store.insert_subscription(
        db,
        email=email,
        plan=plan,
        transaction_ref=transaction_ref,
        status=STATUS_PAID,
        expires_at=store.compute_expiry(now, plan.interval_days),
        source=store.SOURCE_WEBHOOK,
        now=now,
    )
    if not created:
        return _merge_into_existing(db, subscription, STATUS_PAID, now)

    logger.warning(
        "Recorded paid transaction with no local checkout ref=%s email=%s plan_id=%s",
        transaction_ref,
        email,
        plan.id,
    )
    return ReconcileOutcome(transaction_ref, STATUS_PAID, ACTION_CREATED_OUT_OF_BAND, subscription)


def reconcile_transaction(
    db: Session,
    transaction_ref: str,
    gateway_status: Optional[str],
    customer_email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconcileOutcome:
    new_status = map_status(gateway_status)
    now = store.normalize_datetime(now) or store.utcnow()

    existing = store.find_by_transaction_ref(db, transaction_ref)
    if existing is None:
        if new_status != STATUS_PAID:
            logger.info(
                "No subscription for transaction ref=%s gateway_status=%s; nothing to reconcile",
                transaction_ref,
                gateway_status,
            )
            return ReconcileOutcome(transaction_ref, new_status, ACTION_IGNORED_UNKNOWN, None, gateway_status)
        outcome = _record_out_of_band_payment(db, transaction_ref, customer_email, now)
    else:
        outcome = _merge_into_existing(db, existing, new_status, now)

    return ReconcileOutcome(
        outcome.transaction_ref,
        outcome.status,
        outcome.action,
        outcome.subscription,
        gateway_status,
    )


def verify_transaction(
    db: Session,
    client: WompiClient,
    transaction_ref: str,
    now: Optional[datetime] = None,
) -> ReconcileOutcome:
    existing = store.find_by_transaction_ref(db, transaction_ref)
    if existing is not None and is_terminal(existing.status):
        return ReconcileOutcome(transaction_ref, existing.status, ACTION_ALREADY_FINAL, existing)

    transaction = client.fetch_transaction(transaction_ref)
    return reconcile_transaction(
        db,
        transaction_ref,
        transaction.status,
        customer_email=transaction.customer_email,
        now=now,
    )
