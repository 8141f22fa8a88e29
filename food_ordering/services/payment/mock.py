"""
Mock Payment Gateway Implementation

Simulates Paystack without making real API calls.
Used in development mode (ENV_MODE=development) and in tests to:
    - Run the complete checkout, verify and webhook flow locally
    - Script specific outcomes (decline, abandon, outage) per reference
    - Produce correctly signed webhook bodies

Behavior:
    - Transactions live in memory, keyed by reference
    - Verify reports ``success`` unless an outcome was scripted
    - Webhook signatures use the same HMAC-SHA512 scheme as Paystack
"""

import asyncio
import json
import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Optional

from food_ordering.core.exceptions import GatewayError
from food_ordering.core.timeutils import utcnow
from food_ordering.services.payment.base import (
    BasePaymentGateway,
    CardAuthorization,
    InitializeResult,
    TransactionResult,
    check_signature,
    sign_payload,
)

logger = logging.getLogger(__name__)


@dataclass
class MockTransaction:
    reference: str
    email: str
    amount_minor: int
    status: str = "pending"
    metadata: dict = field(default_factory=dict)
    authorization: Optional[CardAuthorization] = None
    gateway_response: Optional[str] = None


class MockPaymentGateway(BasePaymentGateway):
    """
    In-memory gateway with scriptable outcomes.

    Example:
        >>> gateway = MockPaymentGateway(webhook_secret="whsec")
        >>> gateway.set_outcome("PSK-1", "failed", gateway_response="Declined")
        >>> result = await gateway.verify_transaction("PSK-1")
        >>> result.status
        'failed'
    """

    DECLINE_RESPONSES = [
        "Declined",
        "Insufficient Funds",
        "Expired Card",
    ]

    def __init__(
        self,
        webhook_secret: str = "mock-webhook-secret",
        default_status: str = "success",
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.webhook_secret = webhook_secret
        self.default_status = default_status
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.unavailable = False

        self.transactions: dict[str, MockTransaction] = {}
        self.declined_authorizations: set[str] = set()
        self.calls: list[tuple[str, str]] = []

        logger.info(
            f"MockPaymentGateway initialized "
            f"(default_status={default_status}, latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "paystack"

    # =========================================================================
    # SCRIPTING HELPERS
    # =========================================================================

    def set_outcome(
        self,
        reference: str,
        status: str,
        authorization: Optional[CardAuthorization] = None,
        gateway_response: Optional[str] = None,
    ) -> None:
        """Fix what verify returns for ``reference``."""
        txn = self.transactions.get(reference)
        if txn is None:
            txn = MockTransaction(reference=reference, email="", amount_minor=0)
            self.transactions[reference] = txn
        txn.status = status
        txn.authorization = authorization
        txn.gateway_response = gateway_response

    def decline_authorization(self, authorization_code: str) -> None:
        self.declined_authorizations.add(authorization_code)

    def sign(self, raw_body: bytes) -> str:
        return sign_payload(self.webhook_secret, raw_body)

    def build_webhook(
        self,
        reference: str,
        event: str = "charge.success",
        status: str = "success",
        event_id: Optional[str] = None,
        authorization: Optional[CardAuthorization] = None,
    ) -> tuple[bytes, str]:
        """A signed Paystack-style webhook body and its signature header."""
        data = {
            "id": event_id or random.randint(10_000_000, 99_999_999),
            "reference": reference,
            "status": status,
            "paid_at": utcnow().isoformat(),
        }
        if authorization is not None:
            data["authorization"] = authorization.to_dict()
        raw_body = json.dumps({"event": event, "data": data}).encode("utf-8")
        return raw_body, self.sign(raw_body)

    # =========================================================================
    # GATEWAY INTERFACE
    # =========================================================================

    async def _simulate_latency(self) -> None:
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    async def _enter(self, operation: str, reference: str) -> None:
        self.calls.append((operation, reference))
        await self._simulate_latency()
        if self.unavailable:
            logger.debug(f"Mock: {operation} {reference} - simulated outage")
            raise GatewayError("Mock gateway unavailable")

    async def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> InitializeResult:
        await self._enter("initialize", reference)
        if amount_minor <= 0:
            raise GatewayError("Invalid amount")

        txn = self.transactions.get(reference)
        if txn is None:
            txn = MockTransaction(
                reference=reference,
                email=email,
                amount_minor=amount_minor,
                status="pending",
            )
            self.transactions[reference] = txn
        txn.email = email
        txn.amount_minor = amount_minor
        txn.metadata = dict(metadata or {})

        access_code = uuid.uuid4().hex[:16]
        logger.debug(f"Mock: Initialized {reference} for {amount_minor} minor units")
        return InitializeResult(
            reference=reference,
            authorization_url=f"https://checkout.mock.local/{access_code}",
            access_code=access_code,
        )

    async def verify_transaction(self, reference: str) -> TransactionResult:
        await self._enter("verify", reference)
        txn = self.transactions.get(reference)
        if txn is None:
            raise GatewayError("Transaction reference not found")

        status = self.default_status if txn.status == "pending" else txn.status
        return TransactionResult(
            status=status,
            reference=reference,
            authorization=txn.authorization,
            paid_at=utcnow() if status == "success" else None,
            metadata=dict(txn.metadata),
            gateway_response=txn.gateway_response or ("Approved" if status == "success" else None),
            raw={"reference": reference, "status": status, "amount": txn.amount_minor, "mock": True},
        )

    async def charge_authorization(
        self,
        email: str,
        amount_minor: int,
        authorization_code: str,
        reference: str,
        metadata: Optional[dict] = None,
    ) -> TransactionResult:
        await self._enter("charge", reference)
        if amount_minor <= 0:
            raise GatewayError("Invalid amount")

        if authorization_code in self.declined_authorizations:
            status = "failed"
            gateway_response = random.choice(self.DECLINE_RESPONSES)
        else:
            status = "success"
            gateway_response = "Approved"

        self.transactions[reference] = MockTransaction(
            reference=reference,
            email=email,
            amount_minor=amount_minor,
            status=status,
            metadata=dict(metadata or {}),
            gateway_response=gateway_response,
        )
        logger.info(f"Mock: Charge {reference} on {authorization_code[:8]}... - {status}")
        return TransactionResult(
            status=status,
            reference=reference,
            paid_at=utcnow() if status == "success" else None,
            metadata=dict(metadata or {}),
            gateway_response=gateway_response,
            raw={"reference": reference, "status": status, "amount": amount_minor, "mock": True},
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return check_signature(self.webhook_secret, raw_body, signature)

    async def health_check(self) -> bool:
        logger.debug("Mock: Health check passed")
        return not self.unavailable
