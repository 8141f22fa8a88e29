"""
Payment Settlement Coordinator

Orchestrates the four ways a payment moves:

    initialize   hosted checkout; creates an ``initialized`` payment row
    verify       client pull by reference
    webhook      gateway push, gated by the webhook idempotency guard
    saved card   server-initiated debit of a stored authorization

Verify and webhook share one settlement transition (``_apply_settlement``).
It is idempotent: an already successful payment is left alone, a success
confirms the order only when that transition is legal and consumes the
reserved coupon, and a failure never touches the order status.

No transaction is ever open while the gateway is being called. Each flow
reads in one short transaction, calls the gateway, then decides and writes
under row locks in a second one. Receipts go out after the commit.
"""

import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from food_ordering.core.config import get_settings
from food_ordering.core.exceptions import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    GatewayError,
    NotFoundError,
    PaymentDeclinedError,
    ValidationError,
)
from food_ordering.core.money import to_decimal, to_minor_units
from food_ordering.core.timeutils import utcnow
from food_ordering.database import transaction
from food_ordering.models import Order, OrderStatus, Payment, PaymentStatus
from food_ordering.services import repository
from food_ordering.services.cards import upsert_saved_card
from food_ordering.services.coupons import consume_order_redemption
from food_ordering.services.order_state import is_terminal, is_transition_allowed
from food_ordering.services.payment import BasePaymentGateway, TransactionResult
from food_ordering.services.payment.paystack import transaction_from_payload
from food_ordering.services.receipts import ReceiptDispatcher
from food_ordering.services.webhook_guard import (
    GuardDecision,
    GuardResult,
    claim_event,
    fingerprint,
    mark_processed,
    record_event,
)

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{6,120}$")
CALLBACK_URL_MAX_LENGTH = 500
REFERENCE_PREFIX = "PSK"
AUTO_REFERENCE_PREFIX = "PSK-AUTO"
SUCCESS_EVENT = "charge.success"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class InitializeOutcome:
    order_id: str
    reference: str
    authorization_url: str
    access_code: Optional[str]
    amount: Decimal
    currency: str
    save_card: bool = False


@dataclass
class SettlementOutcome:
    """What a verify / webhook / saved-card flow did to a payment."""
    reference: str
    order_id: str
    status: str
    message: str
    order_status: Optional[str] = None
    receipt_status: Optional[str] = None
    gateway_response: Optional[str] = None
    duplicate_of: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

def generate_reference(order_id: str, prefix: str = REFERENCE_PREFIX) -> str:
    """``PSK-<first 8 of order id>-<epoch millis><3 random digits>``"""
    order_part = order_id.replace("-", "")[:8].upper()
    return f"{prefix}-{order_part}-{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


def is_valid_reference(reference: Optional[str]) -> bool:
    return bool(reference) and bool(REFERENCE_PATTERN.match(reference))


def validate_callback_url(callback_url: Optional[str]) -> Optional[str]:
    if callback_url is None:
        return None
    if not isinstance(callback_url, str) or len(callback_url) > CALLBACK_URL_MAX_LENGTH:
        raise ValidationError("Invalid callbackUrl", reason="invalid_callback_url")
    parsed = urlparse(callback_url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValidationError("callbackUrl must use https", reason="invalid_callback_url")
    return callback_url


def resolve_receipt_status(remote_status: Optional[str], gateway_response: Optional[str] = None) -> str:
    """Map a gateway status onto the receipt vocabulary: success, failed, declined."""
    status = (remote_status or "").strip().lower()
    if status == "success":
        return "success"
    if status in ("failed", "abandoned"):
        return "failed"
    if "declined" in (gateway_response or "").lower():
        return "declined"
    return status or "failed"


def _dump(data: Any) -> str:
    return json.dumps(data, default=str)


def _wants_saved_card(payment: Payment, remote: TransactionResult) -> bool:
    if payment.save_card:
        return True
    metadata = remote.metadata or {}
    return bool(metadata.get("save_card") or metadata.get("saveCard"))


# =============================================================================
# COORDINATOR
# =============================================================================

class SettlementCoordinator:
    """
    One instance per request: wraps the request's session, the gateway and
    the receipt dispatcher.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: BasePaymentGateway,
        receipts: Optional[ReceiptDispatcher] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.receipts = receipts
        self.currency = get_settings().currency

    # -------------------------------------------------------------------------
    # initialize
    # -------------------------------------------------------------------------

    async def initialize_payment(
        self,
        user_id: str,
        order_id: str,
        callback_url: Optional[str] = None,
        save_card: bool = False,
    ) -> InitializeOutcome:
        callback_url = validate_callback_url(callback_url)

        async with transaction(self.session):
            order = await repository.get_order(self.session, order_id, user_id=user_id)
            if is_terminal(order.status):
                raise ValidationError(
                    f"Cannot initialize payment for '{order.status.value}' order",
                    reason="order_not_payable",
                )
            await self._ensure_not_paid(order.id)
            user = await repository.get_user(self.session, user_id)
            if user is None or not user.email:
                raise ValidationError(
                    "User email is required for payment initialization",
                    reason="email_required",
                )
            email = user.email
            amount = to_decimal(order.payable_amount)

        reference = generate_reference(order.id)
        session_info = await self.gateway.initialize_transaction(
            email=email,
            amount_minor=to_minor_units(amount),
            reference=reference,
            callback_url=callback_url,
            metadata={"order_id": order.id, "user_id": user_id, "save_card": bool(save_card)},
        )

        async with transaction(self.session):
            self.session.add(Payment(
                order_id=order.id,
                user_id=user_id,
                provider=self.gateway.provider_name,
                reference=reference,
                amount=amount,
                currency=self.currency,
                status=PaymentStatus.INITIALIZED,
                save_card=bool(save_card),
                gateway_response=_dump({"access_code": session_info.access_code, "save_card": bool(save_card)}),
            ))

        logger.info(f"Payment {reference} initialized for order {order.id} ({amount} {self.currency})")
        return InitializeOutcome(
            order_id=order.id,
            reference=reference,
            authorization_url=session_info.authorization_url,
            access_code=session_info.access_code,
            amount=amount,
            currency=self.currency,
            save_card=bool(save_card),
        )

    async def _ensure_not_paid(self, order_id: str) -> None:
        existing = await repository.get_successful_payment(self.session, order_id)
        if existing is not None:
            raise ConflictError(
                "Payment already completed for this order",
                reason="already_paid",
                details={"reference": existing.reference},
            )

    # -------------------------------------------------------------------------
    # verify (pull)
    # -------------------------------------------------------------------------

    async def verify_payment(self, user_id: str, reference: str) -> SettlementOutcome:
        if not is_valid_reference(reference):
            raise ValidationError("Invalid reference", reason="invalid_reference")

        async with transaction(self.session):
            payment = await repository.get_payment_by_reference(self.session, reference)
            if payment is None:
                raise NotFoundError("Payment not found", reason="payment_not_found")
            if payment.user_id != user_id:
                raise ForbiddenError("Forbidden")
            if payment.status == PaymentStatus.SUCCESS:
                return SettlementOutcome(
                    reference=reference,
                    order_id=payment.order_id,
                    status=PaymentStatus.SUCCESS.value,
                    message="Payment already verified",
                )

        remote = await self.gateway.verify_transaction(reference)

        async with transaction(self.session):
            payment = await repository.get_payment_by_reference(self.session, reference, for_update=True)
            outcome = await self._apply_settlement(payment, remote)

        await self._send_receipt(outcome)
        return outcome

    # -------------------------------------------------------------------------
    # webhook (push)
    # -------------------------------------------------------------------------

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> str:
        """
        Process one signed gateway delivery and return the acknowledgement message.

        Raises ``AuthenticationError`` on a bad signature. Errors while
        recording the receipt propagate (the delivery was not accepted);
        errors after that are logged and acknowledged, leaving the receipt
        unprocessed for the next redelivery.
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise AuthenticationError("Invalid webhook signature", reason="invalid_signature")

        event = _parse_event(raw_body)
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        event_id = _event_id(event, data)
        reference = str(data["reference"]) if data.get("reference") else None

        guard = await record_event(
            self.session,
            provider=self.gateway.provider_name,
            signature=signature,
            raw_body=raw_body,
            event_id=event_id,
            reference=reference,
        )
        if guard.decision == GuardDecision.ALREADY_PROCESSED:
            return "Replay ignored"

        try:
            message, outcome = await self._process_webhook(guard, event, data, event_id, reference, raw_body)
        except Exception:
            logger.exception(
                f"Webhook processing failed for reference={reference}; receipt {guard.receipt_id} left unprocessed"
            )
            return "Webhook received"

        if outcome is not None:
            await self._send_receipt(outcome)
        return message

    async def _process_webhook(
        self,
        guard: GuardResult,
        event: dict,
        data: dict,
        event_id: Optional[str],
        reference: Optional[str],
        raw_body: bytes,
    ) -> tuple[str, Optional[SettlementOutcome]]:
        async with transaction(self.session):
            receipt = await claim_event(
                self.session,
                guard.receipt_id,
                event_id=event_id,
                reference=reference,
                payload_hash=fingerprint(raw_body),
            )
            if receipt is None:
                return "Replay ignored", None

            if not is_valid_reference(reference):
                await mark_processed(self.session, receipt.id)
                return "Webhook received", None

            payment = await repository.get_payment_by_reference(self.session, reference, for_update=True)
            if payment is None:
                logger.info(f"Webhook for unknown payment reference {reference}")
                await mark_processed(self.session, receipt.id)
                return "Webhook received", None

            if payment.status == PaymentStatus.SUCCESS:
                await mark_processed(self.session, receipt.id)
                return "Already processed", None

            remote = transaction_from_payload(data, reference)
            if event.get("event") == SUCCESS_EVENT:
                remote.status = "success"
            outcome = await self._apply_settlement(payment, remote)
            await mark_processed(self.session, receipt.id)

        return "Webhook processed", outcome

    # -------------------------------------------------------------------------
    # saved card
    # -------------------------------------------------------------------------

    async def charge_saved_card(self, user_id: str, order_id: str, card_id: str) -> SettlementOutcome:
        """
        Debit a stored authorization for the order's payable amount.

        The ``initialized`` payment row is claimed under the order lock before
        the gateway is called, so a parallel debit of the same order is
        refused instead of charging the card twice. A gateway error leaves
        that row ``initialized`` for a later verify.
        """
        async with transaction(self.session):
            order = await repository.get_order(self.session, order_id, user_id=user_id, for_update=True)
            if is_terminal(order.status):
                raise ValidationError(
                    f"Cannot pay for '{order.status.value}' order", reason="order_not_payable"
                )
            await self._ensure_not_paid(order.id)
            in_flight = await repository.get_open_payment(
                self.session,
                order.id,
                created_after=utcnow() - timedelta(minutes=get_settings().payment_session_ttl_minutes),
                reference_prefix=f"{AUTO_REFERENCE_PREFIX}-",
            )
            if in_flight is not None:
                raise ConflictError(
                    "A card debit is already in progress for this order",
                    reason="payment_in_progress",
                    details={"reference": in_flight.reference},
                )
            card = await repository.get_saved_card(self.session, card_id, user_id, reusable_only=True)
            if card is None:
                raise NotFoundError("Reusable saved card not found", reason="card_not_found")
            user = await repository.get_user(self.session, user_id)
            if user is None or not user.email:
                raise ValidationError("User email is required for payment", reason="email_required")
            email = user.email
            amount = to_decimal(order.payable_amount)
            authorization_code = card.authorization_code

            reference = generate_reference(order.id, prefix=AUTO_REFERENCE_PREFIX)
            self.session.add(Payment(
                order_id=order.id,
                user_id=user_id,
                provider=self.gateway.provider_name,
                reference=reference,
                amount=amount,
                currency=self.currency,
                status=PaymentStatus.INITIALIZED,
                save_card=False,
                gateway_response=_dump({"auto_debit": True, "card_id": card_id}),
            ))

        try:
            remote = await self.gateway.charge_authorization(
                email=email,
                amount_minor=to_minor_units(amount),
                authorization_code=authorization_code,
                reference=reference,
                metadata={"order_id": order.id, "user_id": user_id, "auto_debit": True, "card_id": card_id},
            )
        except GatewayError:
            logger.warning(f"Card debit {reference} for order {order.id} has no gateway answer; left initialized")
            raise

        async with transaction(self.session):
            payment = await repository.get_payment_by_reference(self.session, reference, for_update=True)
            outcome = await self._apply_settlement(payment, remote)
            if payment.status == PaymentStatus.INITIALIZED:
                # a debit is recorded as failed unless the gateway reports success
                payment.status = PaymentStatus.FAILED
                payment.gateway_response = _dump(remote.raw)
                outcome.status = PaymentStatus.FAILED.value
                outcome.receipt_status = resolve_receipt_status(remote.status, remote.gateway_response)
            if outcome.status == PaymentStatus.SUCCESS.value:
                card = await repository.get_saved_card(self.session, card_id, user_id, for_update=True)
                if card is not None:
                    card.last_used_at = utcnow()

        await self._send_receipt(outcome)

        if outcome.status == PaymentStatus.SUCCESS.value:
            return outcome
        if outcome.duplicate_of:
            raise ConflictError(
                "Payment already completed for this order",
                reason="already_paid",
                details={"reference": outcome.duplicate_of},
            )
        raise PaymentDeclinedError(
            "Automatic card debit failed",
            details={
                "order_id": order.id,
                "reference": reference,
                "status": remote.status or "failed",
                "gateway_response": remote.gateway_response,
            },
        )

    # -------------------------------------------------------------------------
    # shared settlement transition
    # -------------------------------------------------------------------------

    async def _apply_settlement(
        self,
        payment: Payment,
        remote: TransactionResult,
        order: Optional[Order] = None,
    ) -> SettlementOutcome:
        """
        Apply a gateway outcome to a locked payment row.

        Must run inside the caller's transaction, with ``payment`` loaded
        ``FOR UPDATE`` (or freshly added).
        """
        if payment.status == PaymentStatus.SUCCESS:
            return SettlementOutcome(
                reference=payment.reference,
                order_id=payment.order_id,
                status=PaymentStatus.SUCCESS.value,
                message="Payment already verified",
            )

        if order is None:
            order = await repository.get_order(self.session, payment.order_id, for_update=True)

        if remote.is_success:
            return await self._settle_success(payment, order, remote)

        if remote.status in (PaymentStatus.FAILED.value, PaymentStatus.ABANDONED.value):
            payment.status = PaymentStatus(remote.status)
            payment.gateway_response = _dump(remote.raw)
            logger.info(f"Payment {payment.reference} {remote.status}; order {order.id} left {order.status.value}")
            return SettlementOutcome(
                reference=payment.reference,
                order_id=order.id,
                status=remote.status,
                order_status=order.status.value,
                message="Payment verification completed",
                receipt_status=resolve_receipt_status(remote.status, remote.gateway_response),
                gateway_response=remote.gateway_response,
            )

        logger.info(f"Payment {payment.reference} still {remote.status or 'unknown'} at the gateway")
        return SettlementOutcome(
            reference=payment.reference,
            order_id=order.id,
            status=remote.status or payment.status.value,
            order_status=order.status.value,
            message="Payment verification completed",
            gateway_response=remote.gateway_response,
        )

    async def _settle_success(
        self,
        payment: Payment,
        order: Order,
        remote: TransactionResult,
    ) -> SettlementOutcome:
        other = await repository.get_successful_payment(
            self.session, order.id, exclude_payment_id=payment.id
        )
        if other is not None:
            # the order is already paid: never record a second success
            payment.status = PaymentStatus.FAILED
            payment.gateway_response = _dump({
                "duplicate_settlement": True,
                "settled_reference": other.reference,
                "gateway": remote.raw,
            })
            logger.error(
                f"Duplicate settlement on order {order.id}: {payment.reference} succeeded at the "
                f"gateway after {other.reference}; refund required"
            )
            return SettlementOutcome(
                reference=payment.reference,
                order_id=order.id,
                status=PaymentStatus.FAILED.value,
                order_status=order.status.value,
                message="Order already settled by another payment",
                gateway_response=remote.gateway_response,
                duplicate_of=other.reference,
            )

        expected = to_decimal(order.payable_amount)
        paid = to_decimal(payment.amount)
        if paid != expected:
            # money was taken, but not for what the order now costs
            payment.status = PaymentStatus.SUCCESS
            payment.paid_at = remote.paid_at or utcnow()
            payment.gateway_response = _dump({
                "amount_mismatch": True,
                "paid_amount": str(paid),
                "payable_amount": str(expected),
                "gateway": remote.raw,
            })
            logger.error(
                f"Amount mismatch on order {order.id}: {payment.reference} paid {paid}, order payable "
                f"{expected}; order left {order.status.value} for review"
            )
            return SettlementOutcome(
                reference=payment.reference,
                order_id=order.id,
                status=PaymentStatus.SUCCESS.value,
                order_status=order.status.value,
                message="Payment amount does not match the order; held for review",
                gateway_response=remote.gateway_response,
            )

        payment.status = PaymentStatus.SUCCESS
        payment.paid_at = remote.paid_at or utcnow()
        payment.gateway_response = _dump(remote.raw)

        if _wants_saved_card(payment, remote):
            await upsert_saved_card(self.session, payment.user_id, remote.authorization, payment.provider)

        if is_transition_allowed(order.status, OrderStatus.CONFIRMED):
            order.status = OrderStatus.CONFIRMED
        await consume_order_redemption(self.session, order.id)

        logger.info(f"Payment {payment.reference} settled; order {order.id} is {order.status.value}")
        return SettlementOutcome(
            reference=payment.reference,
            order_id=order.id,
            status=PaymentStatus.SUCCESS.value,
            order_status=order.status.value,
            message="Payment verification completed",
            receipt_status="success",
            gateway_response=remote.gateway_response,
        )

    # -------------------------------------------------------------------------
    # receipts
    # -------------------------------------------------------------------------

    async def _send_receipt(self, outcome: SettlementOutcome) -> None:
        if self.receipts is None or not outcome.receipt_status:
            return
        try:
            await self.receipts.dispatch(outcome.order_id, outcome.reference, outcome.receipt_status)
        except Exception:
            logger.exception(f"Receipt dispatch failed for order {outcome.order_id}")


def _parse_event(raw_body: bytes) -> dict:
    try:
        event = json.loads(raw_body)
    except ValueError:
        logger.warning("Signed webhook body is not valid JSON")
        return {}
    return event if isinstance(event, dict) else {}


def _event_id(event: dict, data: dict) -> Optional[str]:
    for value in (event.get("id"), data.get("id")):
        if value not in (None, ""):
            return str(value)
    return None
