"""Thin client for the Wompi payment gateway.

Only the two calls the reconciliation engine needs are wrapped: creating a
transaction for hosted checkout and fetching a transaction's current state.
The client holds configuration only, so one instance can be shared.
"""

import hashlib
import hmac
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import requests
from dotenv import load_dotenv

from divebilling.errors import GatewayUnavailable, TransactionNotFound

load_dotenv()

logger = logging.getLogger(__name__)

WOMPI_API_BASE = os.getenv("WOMPI_API_BASE", "https://sandbox.wompi.co/v1").rstrip("/")
WOMPI_CURRENCY = (os.getenv("WOMPI_CURRENCY", "COP").strip().upper() or "COP")


def _timeout_seconds() -> float:
    raw = os.getenv("WOMPI_TIMEOUT_SECONDS", "15").strip()
    try:
        timeout = float(raw)
        if timeout <= 0:
            raise ValueError
        return timeout
    except ValueError:
        return 15.0


@dataclass(frozen=True)
class CreatedTransaction:
    transaction_ref: str
    checkout_url: Optional[str]
    reference: str


@dataclass(frozen=True)
class GatewayTransaction:
    transaction_ref: str
    status: str
    amount_in_cents: int
    customer_email: Optional[str]


class WompiClient:
    def __init__(
        self,
        private_key: Optional[str] = None,
        public_key: Optional[str] = None,
        base_url: Optional[str] = None,
        acceptance_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.private_key = (private_key if private_key is not None else os.getenv("WOMPI_PRIVATE_KEY", "")).strip()
        self.public_key = (public_key if public_key is not None else os.getenv("WOMPI_PUBLIC_KEY", "")).strip()
        self.base_url = (base_url or WOMPI_API_BASE).rstrip("/")
        self.acceptance_token = (
            acceptance_token if acceptance_token is not None else os.getenv("WOMPI_ACCEPTANCE_TOKEN", "")
        ).strip()
        self.timeout = timeout if timeout is not None else _timeout_seconds()

    def _request(
        self,
        method: str,
        path: str,
        json_payload: Optional[dict[str, Any]] = None,
        authenticated: bool = True,
        allow_missing: bool = False,
    ) -> Optional[dict[str, Any]]:
        headers = {"Content-Type": "application/json"}
        if authenticated:
            if not self.private_key:
                raise GatewayUnavailable("Payment gateway is not configured.")
            headers["Authorization"] = f"Bearer {self.private_key}"

        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = requests.request(
                method=method.upper(),
                url=url,
                headers=headers,
                json=json_payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Wompi request failed method=%s path=%s error=%s", method, path, exc)
            raise GatewayUnavailable(f"Failed to contact Wompi: {exc}") from exc

        if response.status_code == 404 and allow_missing:
            return None
        if response.status_code >= 400:
            logger.warning(
                "Wompi returned an error method=%s path=%s status=%s body=%s",
                method,
                path,
                response.status_code,
                response.text[:500],
            )
            raise GatewayUnavailable("Unable to process Wompi request right now.")

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayUnavailable("Invalid response received from Wompi.") from exc

        if not isinstance(payload, dict):
            raise GatewayUnavailable("Unexpected response format from Wompi.")
        return payload

    def _resolve_acceptance_token(self) -> str:
        if self.acceptance_token:
            return self.acceptance_token
        if not self.public_key:
            raise GatewayUnavailable("Wompi acceptance token is not configured.")

        payload = self._request("GET", f"/merchants/{self.public_key}", authenticated=False)
        merchant = payload.get("data") or {}
        token = str((merchant.get("presigned_acceptance") or {}).get("acceptance_token") or "").strip()
        if not token:
            raise GatewayUnavailable("Wompi did not return an acceptance token.")
        return token

    def create_transaction(
        self,
        amount_in_cents: int,
        currency: str,
        customer_email: str,
        redirect_url: Optional[str],
        reference: Optional[str] = None,
    ) -> CreatedTransaction:
        reference = reference or f"subscription_{uuid.uuid4()}"
        payload = {
            "acceptance_token": self._resolve_acceptance_token(),
            "amount_in_cents": int(amount_in_cents),
            "currency": currency,
            "customer_email": customer_email,
            "reference": reference,
            "customer_data": {"full_name": customer_email.split("@")[0]},
        }
        if redirect_url:
            payload["redirect_url"] = redirect_url

        response = self._request("POST", "/transactions", json_payload=payload)
        data = response.get("data") or {}
        transaction_ref = str(data.get("id") or "").strip()
        if not transaction_ref:
            raise GatewayUnavailable("Invalid transaction response from Wompi.")

        checkout_url = (data.get("payment_method") or {}).get("checkout_url") or None
        logger.info("Wompi transaction created ref=%s reference=%s", transaction_ref, reference)
        return CreatedTransaction(
            transaction_ref=transaction_ref,
            checkout_url=checkout_url,
            reference=reference,
        )

    def fetch_transaction(self, transaction_ref: str) -> GatewayTransaction:
        path = f"/transactions/{requests.utils.quote(transaction_ref, safe='')}"
        response = self._request("GET", path, allow_missing=True)
        if response is None:
            raise TransactionNotFound(f"Wompi has no transaction {transaction_ref}.")

        data = response.get("data")
        if not isinstance(data, dict) or not data.get("id"):
            raise GatewayUnavailable("Unexpected transaction payload from Wompi.")

        try:
            amount = int(data.get("amount_in_cents") or 0)
        except (TypeError, ValueError):
            amount = 0

        return GatewayTransaction(
            transaction_ref=str(data["id"]),
            status=str(data.get("status") or "").strip().upper(),
            amount_in_cents=amount,
            customer_email=(str(data.get("customer_email") or "").strip().lower() or None),
        )


def verify_event_checksum(event: dict[str, Any], secret: str) -> bool:
    """Check an event's checksum as Wompi computes it.

    SHA-256 over the values named in ``signature.properties`` (paths into
    ``data``), followed by the event ``timestamp`` and the events secret.
    """
    signature = event.get("signature") or {}
    if not isinstance(signature, dict):
        return False
    properties = signature.get("properties")
    checksum = str(signature.get("checksum") or "").strip().lower()
    if not checksum or not isinstance(properties, list):
        return False

    data = event.get("data") or {}
    parts = []
    for prop in properties:
        value: Any = data
        for key in str(prop).split("."):
            value = value.get(key) if isinstance(value, dict) else None
        parts.append("" if value is None else str(value))
    parts.append(str(event.get("timestamp") or ""))
    parts.append(secret)

    expected = hashlib.sha256("".join(parts).encode("utf-8")).hexdigest()
    return hmac.compare_digest(expected, checksum)


_client: Optional[WompiClient] = None


def get_gateway_client() -> WompiClient:
    global _client
    if _client is None:
        _client = WompiClient()
    return _client
