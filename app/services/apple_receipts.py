"""
App Store receipt verification (verifyReceipt endpoint).

Production first; a 21007 status means the receipt came from the sandbox, so it is
re-submitted to the sandbox endpoint. Everything returned to callers comes from
Apple's response, never from client-supplied fields.
"""

from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel, Field

from app.core.config import Settings
from app.core.exceptions import BadRequestError, UpstreamError, VerificationRejectedError
from app.core.logging import get_logger

log = get_logger(__name__)

STATUS_VALID = 0
STATUS_SANDBOX_RECEIPT = 21007

APPLE_STATUS_MESSAGES = {
    21000: "Request to the App Store was not made using HTTP POST",
    21002: "Receipt data was malformed or missing",
    21003: "Receipt could not be authenticated",
    21004: "Shared secret does not match the account's shared secret",
    21005: "Receipt server was temporarily unable to provide the receipt",
    21006: "Receipt is valid but the subscription has expired",
    21007: "Sandbox receipt sent to the production environment",
    21008: "Production receipt sent to the sandbox environment",
    21009: "Internal data access error",
    21010: "User account cannot be found or has been deleted",
}


class VerifiedPurchase(BaseModel):
    product_id: str
    transaction_id: str
    original_transaction_id: str | None = None
    purchase_date: datetime | None = None
    expiration_date: datetime | None = None
    is_trial: bool = False
    is_sandbox: bool = False
    apple_status: int = STATUS_VALID
    raw: dict[str, Any] = Field(default_factory=dict)


def ms_to_datetime(value: Any) -> datetime | None:
    """Apple millisecond timestamp (string or int) -> naive UTC datetime."""
    if value in (None, ""):
        return None
    try:
        ms = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).replace(tzinfo=None)


def latest_transaction(payload: dict[str, Any]) -> dict[str, Any] | None:
    """First entry of latest_receipt_info, else the last in_app entry of the receipt."""
    latest = payload.get("latest_receipt_info") or []
    if latest:
        return latest[0]
    in_app = (payload.get("receipt") or {}).get("in_app") or []
    if in_app:
        return in_app[-1]
    return None


def parse_verified_purchase(payload: dict[str, Any], used_sandbox: bool) -> VerifiedPurchase:
    tx = latest_transaction(payload)
    if not tx or not tx.get("transaction_id") or not tx.get("product_id"):
        raise BadRequestError("No transaction found in receipt")
    environment = str(payload.get("environment") or "")
    return VerifiedPurchase(
        product_id=tx["product_id"],
        transaction_id=str(tx["transaction_id"]),
        original_transaction_id=str(tx["original_transaction_id"]) if tx.get("original_transaction_id") else None,
        purchase_date=ms_to_datetime(tx.get("purchase_date_ms")),
        expiration_date=ms_to_datetime(tx.get("expires_date_ms")),
        is_trial=str(tx.get("is_trial_period", "")).lower() == "true",
        is_sandbox=used_sandbox or environment.lower() == "sandbox",
        apple_status=int(payload.get("status", STATUS_VALID)),
        raw=payload,
    )


class AppleReceiptVerifier:
    """Calls Apple's verifyReceipt endpoints with the app's shared secret."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client

    async def verify(self, receipt_data: str) -> VerifiedPurchase:
        if self._client is not None:
            return await self._verify_with(self._client, receipt_data)
        async with httpx.AsyncClient(timeout=self.settings.apple_timeout_seconds) as client:
            return await self._verify_with(client, receipt_data)

    async def _verify_with(self, client: httpx.AsyncClient, receipt_data: str) -> VerifiedPurchase:
        used_sandbox = False
        payload = await self._post(client, self.settings.apple_production_url, receipt_data)
        status = _status_of(payload)
        if status == STATUS_SANDBOX_RECEIPT:
            log.info("apple_sandbox_retry")
            used_sandbox = True
            payload = await self._post(client, self.settings.apple_sandbox_url, receipt_data)
            status = _status_of(payload)
        if status != STATUS_VALID:
            log.warning(
                "apple_verification_rejected",
                apple_status=status,
                reason=APPLE_STATUS_MESSAGES.get(status, "unknown status"),
                sandbox=used_sandbox,
            )
            raise VerificationRejectedError(status)
        return parse_verified_purchase(payload, used_sandbox)

    async def _post(self, client: httpx.AsyncClient, url: str, receipt_data: str) -> dict[str, Any]:
        body = {
            "receipt-data": receipt_data,
            "password": self.settings.apple_shared_secret,
            "exclude-old-transactions": self.settings.apple_exclude_old_transactions,
        }
        try:
            response = await client.post(url, json=body, timeout=self.settings.apple_timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            log.error("apple_verification_timeout", url=url)
            raise UpstreamError("Timeout verifying receipt with the App Store") from e
        except httpx.HTTPStatusError as e:
            log.error("apple_verification_http_error", url=url, status_code=e.response.status_code)
            raise UpstreamError(f"App Store returned HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            log.error("apple_verification_request_error", url=url, error=str(e))
            raise UpstreamError("Error communicating with the App Store") from e
        except ValueError as e:
            log.error("apple_verification_invalid_json", url=url)
            raise UpstreamError("App Store returned an invalid response") from e
        if not isinstance(payload, dict):
            raise UpstreamError("App Store returned an invalid response")
        return payload


def _status_of(payload: dict[str, Any]) -> int:
    try:
        return int(payload.get("status", -1))
    except (TypeError, ValueError):
        return -1
