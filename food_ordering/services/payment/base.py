"""
Payment Gateway Abstract Base Class

Defines the interface contract for all payment gateway implementations.
Both MockPaymentGateway and PaystackGateway must implement these methods,
so the settlement coordinator behaves identically regardless of which
gateway is active.

Design Pattern: Strategy Pattern
    - Allows runtime switching between gateways
    - Facilitates testing with the in-memory mock

All amounts cross this interface as integer minor units (kobo). Transport
problems are raised as ``GatewayError``; a declined or abandoned
transaction is a normal ``TransactionResult`` with the matching status.
"""

import hashlib
import hmac
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

SIGNATURE_PATTERN = re.compile(r"^[a-f0-9]{128}$")


@dataclass
class CardAuthorization:
    """
    Reusable card credential returned by the gateway.

    Attributes:
        authorization_code: Token used to debit the card again
        signature: Stable card fingerprint (unique per customer)
        reusable: Whether the gateway allows recurring debits
    """
    authorization_code: str
    signature: Optional[str] = None
    reusable: bool = False
    last4: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None
    card_type: Optional[str] = None
    bank: Optional[str] = None
    account_name: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Optional[dict]) -> Optional["CardAuthorization"]:
        """Build from a gateway ``authorization`` object; None if unusable."""
        if not isinstance(data, dict):
            return None
        code = str(data.get("authorization_code") or "").strip()
        if not code:
            return None

        def text(key: str) -> Optional[str]:
            value = data.get(key)
            return str(value).strip() if value not in (None, "") else None

        return cls(
            authorization_code=code,
            signature=text("signature"),
            reusable=bool(data.get("reusable")),
            last4=text("last4"),
            exp_month=text("exp_month"),
            exp_year=text("exp_year"),
            card_type=text("card_type"),
            bank=text("bank"),
            account_name=text("account_name"),
        )

    def to_dict(self) -> dict:
        return {
            "authorization_code": self.authorization_code,
            "signature": self.signature,
            "reusable": self.reusable,
            "last4": self.last4,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
            "card_type": self.card_type,
            "bank": self.bank,
            "account_name": self.account_name,
        }


@dataclass
class InitializeResult:
    """Hosted-checkout session created by the gateway."""
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


@dataclass
class TransactionResult:
    """
    Standardized view of a gateway transaction (verify or charge).

    Attributes:
        status: Gateway status string (success, failed, abandoned, ...)
        reference: Our payment reference
        authorization: Card credential, when the gateway returned one
        paid_at: Settlement time reported by the gateway
        metadata: Metadata echoed back by the gateway
        gateway_response: Human-readable gateway message ("Approved", "Declined")
        raw: Full ``data`` object, stored opaquely on the payment row
    """
    status: str
    reference: str
    authorization: Optional[CardAuthorization] = None
    paid_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)
    gateway_response: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.status == "success"


def sign_payload(secret: str, raw_body: bytes) -> str:
    """HMAC-SHA512 hex digest of the raw webhook body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def check_signature(secret: Optional[str], raw_body: bytes, signature: Optional[str]) -> bool:
    """Constant-time comparison of a webhook signature header."""
    if not secret or not raw_body or not signature:
        return False
    provided = signature.strip().lower()
    if not SIGNATURE_PATTERN.match(provided):
        return False
    return hmac.compare_digest(sign_payload(secret, raw_body), provided)


class BasePaymentGateway(ABC):
    """
    Abstract base class for payment gateways.

    Example:
        >>> gateway = get_payment_gateway()  # Mock or Paystack
        >>> session = await gateway.initialize_transaction(
        ...     email="ada@example.com", amount_minor=400000, reference="PSK-..."
        ... )
        >>> print(session.authorization_url)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider name stored on payment rows (e.g. "paystack")."""
        pass

    @abstractmethod
    async def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> InitializeResult:
        """Open a hosted checkout for ``reference``."""
        pass

    @abstractmethod
    async def verify_transaction(self, reference: str) -> TransactionResult:
        """Fetch the current state of a transaction."""
        pass

    @abstractmethod
    async def charge_authorization(
        self,
        email: str,
        amount_minor: int,
        authorization_code: str,
        reference: str,
        metadata: Optional[dict] = None,
    ) -> TransactionResult:
        """Debit a saved reusable authorization without hosted checkout."""
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """True only when ``signature`` is the gateway's signature of ``raw_body``."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    async def close(self) -> None:
        """Release network resources (no-op by default)."""
        return None
