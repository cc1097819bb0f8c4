"""Webhook intake for gateway events.

Only ``transaction.updated`` events carry information this service acts on.
Anything else is acknowledged and ignored so the gateway's delivery
bookkeeping is not disturbed. Failures that the gateway should retry
(``StoreUnavailable``) or that an operator must see (``OrphanedPayment``)
propagate to the HTTP layer.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from divebilling.errors import BillingError, InvalidSignature, MalformedEvent, OrphanedPayment, StoreUnavailable
from divebilling.gateway import verify_event_checksum
from divebilling.reconciliation import reconcile_transaction

load_dotenv()

logger = logging.getLogger(__name__)

WOMPI_EVENTS_SECRET = os.getenv("WOMPI_EVENTS_SECRET", "").strip()

EVENT_TRANSACTION_UPDATED = "transaction.updated"


@dataclass(frozen=True)
class TransactionUpdate:
    transaction_ref: str
    status: str
    customer_email: Optional[str]


def parse_event(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEvent("Invalid webhook payload.") from exc
    if not isinstance(payload, dict):
        raise MalformedEvent("Webhook payload must be a JSON object.")
    return payload


def event_type(event: dict[str, Any]) -> str:
    return str(event.get("event") or event.get("eventType") or "").strip()


def extract_transaction(event: dict[str, Any]) -> Optional[TransactionUpdate]:
    data = event.get("data")
    transaction = data.get("transaction") if isinstance(data, dict) else None
    if transaction is None:
        transaction = event.get("transaction")
    if not isinstance(transaction, dict):
        return None

    transaction_ref = str(transaction.get("id") or "").strip()
    status = str(transaction.get("status") or "").strip()
    if not transaction_ref or not status:
        return None

    email = transaction.get("customer_email") or transaction.get("customerEmail")
    return TransactionUpdate(
        transaction_ref=transaction_ref,
        status=status,
        customer_email=(str(email).strip() or None) if email else None,
    )


def check_signature(event: dict[str, Any]) -> None:
    if not WOMPI_EVENTS_SECRET:
        logger.warning("WOMPI_EVENTS_SECRET is not set; processing unverified webhook event")
        return
    if not verify_event_checksum(event, WOMPI_EVENTS_SECRET):
        raise InvalidSignature("Invalid webhook signature.")


def handle_event(db: Session, event: dict[str, Any]) -> dict[str, Any]:
    name = event_type(event)
    if name != EVENT_TRANSACTION_UPDATED:
        logger.info("Ignoring webhook event type=%s", name or "<missing>")
        return {"status": "ignored", "event": name}

    update = extract_transaction(event)
    if update is None:
        logger.warning("Webhook %s without usable transaction data", name)
        return {"status": "ignored", "reason": "invalid_transaction"}

    logger.info(
        "Processing webhook transaction ref=%s gateway_status=%s",
        update.transaction_ref,
        update.status,
    )
    try:
        outcome = reconcile_transaction(
            db,
            update.transaction_ref,
            update.status,
            customer_email=update.customer_email,
        )
    except (StoreUnavailable, OrphanedPayment):
        raise
    except BillingError as exc:
        logger.warning(
            "Webhook reconciliation skipped ref=%s error=%s detail=%s",
            update.transaction_ref,
            type(exc).__name__,
            exc.detail,
        )
        return {"status": "ignored", "reason": type(exc).__name__}

    return {"status": "ok", "action": outcome.action, "subscription_status": outcome.status}
