"""
Paystack Payment Gateway Implementation

Production implementation talking to the Paystack REST API over httpx.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - PAYSTACK_SECRET_KEY must be set in environment
    - PAYSTACK_WEBHOOK_SECRET for webhook verification
    - PAYSTACK_BASE_URL must be https

Security Notes:
    - Upstream error bodies are logged, never returned to clients
    - Webhook signatures are compared in constant time
"""

import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import httpx

from food_ordering.core.config import get_settings
from food_ordering.core.exceptions import GatewayError
from food_ordering.services.payment.base import (
    BasePaymentGateway,
    CardAuthorization,
    InitializeResult,
    TransactionResult,
    check_signature,
)

logger = logging.getLogger(__name__)


def parse_gateway_time(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp such as ``2024-05-01T10:00:00.000Z``."""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Paystack: unparseable timestamp {value!r}")
        return None


def transaction_from_payload(data: dict, fallback_reference: str) -> TransactionResult:
    """Map a Paystack transaction ``data`` object onto ``TransactionResult``."""
    metadata = data.get("metadata")
    return TransactionResult(
        status=str(data.get("status") or "").strip().lower(),
        reference=str(data.get("reference") or fallback_reference),
        authorization=CardAuthorization.from_payload(data.get("authorization")),
        paid_at=parse_gateway_time(data.get("paid_at") or data.get("paidAt")),
        metadata=metadata if isinstance(metadata, dict) else {},
        gateway_response=data.get("gateway_response"),
        raw=data,
    )


class PaystackGateway(BasePaymentGateway):
    """
    Paystack gateway over a shared ``httpx.AsyncClient``.

    Every call requires a ``{"status": true, "data": {...}}`` envelope. Any
    transport error, timeout, non-2xx response or malformed body becomes a
    ``GatewayError`` with a generic message.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        currency: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client from settings (arguments override).

        Raises:
            ValueError: If PAYSTACK_SECRET_KEY is not configured
        """
        settings = get_settings()
        secret_key = secret_key or settings.paystack_secret_key
        if not secret_key:
            raise ValueError(
                "PAYSTACK_SECRET_KEY is required outside development mode. "
                "Set it in your .env file or environment variables."
            )

        self._webhook_secret = webhook_secret or settings.paystack_webhook_secret
        self._currency = currency or settings.currency
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.paystack_base_url,
            timeout=timeout or settings.paystack_timeout_seconds,
            headers={"Authorization": f"Bearer {secret_key}"},
            transport=transport,
        )
        logger.info(f"PaystackGateway initialized (base_url={self._client.base_url})")

    @property
    def provider_name(self) -> str:
        return "paystack"

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
    ) -> dict:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.TimeoutException as e:
            logger.error(f"Paystack: {method} {path} timed out: {e}")
            raise GatewayError("Paystack request timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Paystack: {method} {path} failed: {e}")
            raise GatewayError("Paystack request failed") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if (
            not response.is_success
            or not isinstance(payload, dict)
            or payload.get("status") is not True
            or not isinstance(payload.get("data"), dict)
        ):
            message = payload.get("message") if isinstance(payload, dict) else None
            logger.error(
                f"Paystack: {method} {path} rejected "
                f"(http={response.status_code}, message={message!r})"
            )
            raise GatewayError("Paystack request failed")

        return payload["data"]

    async def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> InitializeResult:
        body = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "currency": self._currency,
        }
        if callback_url:
            body["callback_url"] = callback_url
        if metadata:
            body["metadata"] = metadata

        data = await self._request("POST", "/transaction/initialize", body)
        authorization_url = data.get("authorization_url")
        if not authorization_url:
            logger.error(f"Paystack: initialize for {reference} returned no authorization_url")
            raise GatewayError("Paystack request failed")

        return InitializeResult(
            reference=str(data.get("reference") or reference),
            authorization_url=authorization_url,
            access_code=data.get("access_code"),
        )

    async def verify_transaction(self, reference: str) -> TransactionResult:
        data = await self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")
        return transaction_from_payload(data, reference)

    async def charge_authorization(
        self,
        email: str,
        amount_minor: int,
        authorization_code: str,
        reference: str,
        metadata: Optional[dict] = None,
    ) -> TransactionResult:
        body = {
            "email": email,
            "amount": amount_minor,
            "authorization_code": authorization_code,
            "reference": reference,
            "currency": self._currency,
        }
        if metadata:
            body["metadata"] = metadata

        data = await self._request("POST", "/transaction/charge_authorization", body)
        return transaction_from_payload(data, reference)

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return check_signature(self._webhook_secret, raw_body, signature)

    async def health_check(self) -> bool:
        """Paystack has no ping endpoint; listing banks is cheap and authenticated."""
        try:
            response = await self._client.get("/bank", params={"perPage": 1})
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Paystack health check failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
