"""Error taxonomy for the billing service.

Every failure the service layer reports derives from ``BillingError`` and
carries a human-readable ``detail``. The HTTP layer maps each kind to a status
code via ``status_code``; the webhook endpoint uses the kind to decide whether
the gateway should re-deliver.
"""


class BillingError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class GatewayUnavailable(BillingError):
    """The gateway could not be reached or answered with a non-2xx response."""

    status_code = 502


class TransactionNotFound(BillingError):
    """The gateway has no transaction with the requested id."""

    status_code = 404


class PlanNotFound(BillingError):
    """The plan does not exist, is inactive, or no default plan can be chosen."""

    status_code = 404


class StoreUnavailable(BillingError):
    """The subscription store failed while reading or writing."""

    status_code = 503


class MalformedEvent(BillingError):
    """A webhook body could not be parsed."""

    status_code = 400


class InvalidSignature(BillingError):
    """A webhook event checksum was missing or did not match."""

    status_code = 401


class OrphanedPayment(BillingError):
    """The gateway reports a paid transaction that cannot be recorded locally."""

    status_code = 500
