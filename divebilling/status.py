from typing import Optional

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({STATUS_PAID, STATUS_FAILED})

GATEWAY_APPROVED = "APPROVED"
GATEWAY_DECLINED = "DECLINED"
GATEWAY_ERROR = "ERROR"
GATEWAY_VOIDED = "VOIDED"

_GATEWAY_STATUS_MAP = {
    GATEWAY_APPROVED: STATUS_PAID,
    GATEWAY_DECLINED: STATUS_FAILED,
    GATEWAY_ERROR: STATUS_FAILED,
    GATEWAY_VOIDED: STATUS_FAILED,
}


def map_status(gateway_status: Optional[str]) -> str:
    """Translate a gateway transaction status into a subscription status.

    Shared by the webhook and verification paths. Anything not known to be
    final (including ``None`` and unrecognised values) stays ``pending``.
    """
    normalized = str(gateway_status or "").strip().upper()
    return _GATEWAY_STATUS_MAP.get(normalized, STATUS_PENDING)


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES
