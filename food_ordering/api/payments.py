"""
Payment endpoints: hosted checkout, verification, saved cards and the
Paystack webhook.

Customer routes are throttled per client. The webhook is only throttled for
deliveries that fail the signature check, so gateway redelivery bursts are
never refused. It reads the raw body so the signature is checked over the
exact bytes the gateway signed.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from food_ordering.api.deps import (
    get_current_user_id,
    get_gateway,
    get_receipts,
    get_rate_limit_store,
    payment_rate_limit,
    throttle_rejected_webhook,
)
from food_ordering.database import get_db
from food_ordering.schemas import (
    AttachCardRequest,
    ErrorResponse,
    MessageResponse,
    PaymentInitializeRequest,
    PaymentInitializeResponse,
    PaymentOutcomeResponse,
    SavedCardChargeRequest,
    SavedCardListResponse,
    SavedCardResponse,
    WebhookAck,
)
from food_ordering.services import cards as card_service
from food_ordering.services.payment import BasePaymentGateway
from food_ordering.services.receipts import ReceiptDispatcher
from food_ordering.services.settlement import SettlementCoordinator, SettlementOutcome
from food_ordering.services.throttle import BaseCounterStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


def _coordinator(
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_gateway),
    receipts: ReceiptDispatcher = Depends(get_receipts),
) -> SettlementCoordinator:
    return SettlementCoordinator(db, gateway, receipts)


def _outcome(outcome: SettlementOutcome) -> PaymentOutcomeResponse:
    return PaymentOutcomeResponse(
        message=outcome.message,
        reference=outcome.reference,
        order_id=outcome.order_id,
        status=outcome.status,
        order_status=outcome.order_status,
    )


# =============================================================================
# CHECKOUT
# =============================================================================

@router.post(
    "/initialize",
    response_model=PaymentInitializeResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    dependencies=[Depends(payment_rate_limit)],
    summary="Initialize Hosted Checkout",
)
async def initialize_payment(
    body: PaymentInitializeRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: SettlementCoordinator = Depends(_coordinator),
) -> PaymentInitializeResponse:
    result = await coordinator.initialize_payment(
        user_id, body.order_id, callback_url=body.callback_url, save_card=body.save_card
    )
    return PaymentInitializeResponse(
        order_id=result.order_id,
        reference=result.reference,
        authorization_url=result.authorization_url,
        access_code=result.access_code,
        amount=result.amount,
        currency=result.currency,
        save_card=result.save_card,
    )


@router.get(
    "/verify/{reference}",
    response_model=PaymentOutcomeResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    dependencies=[Depends(payment_rate_limit)],
)
async def verify_payment(
    reference: str,
    user_id: str = Depends(get_current_user_id),
    coordinator: SettlementCoordinator = Depends(_coordinator),
) -> PaymentOutcomeResponse:
    """Pull the transaction state from the gateway and settle it."""
    return _outcome(await coordinator.verify_payment(user_id, reference))


@router.post(
    "/pay-with-saved-card",
    response_model=PaymentOutcomeResponse,
    status_code=status.HTTP_201_CREATED,
    responses={402: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    dependencies=[Depends(payment_rate_limit)],
)
async def pay_with_saved_card(
    body: SavedCardChargeRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: SettlementCoordinator = Depends(_coordinator),
) -> PaymentOutcomeResponse:
    outcome = await coordinator.charge_saved_card(user_id, body.order_id, body.card_id)
    outcome.message = "Payment successful"
    return _outcome(outcome)


# =============================================================================
# SAVED CARDS
# =============================================================================

@router.post(
    "/cards",
    response_model=SavedCardResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    dependencies=[Depends(payment_rate_limit)],
    tags=["Saved Cards"],
)
async def attach_card(
    body: AttachCardRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_gateway),
) -> SavedCardResponse:
    card = await card_service.attach_card(db, gateway, user_id, body.reference)
    return SavedCardResponse.model_validate(card)


@router.get(
    "/cards",
    response_model=SavedCardListResponse,
    dependencies=[Depends(payment_rate_limit)],
    tags=["Saved Cards"],
)
async def list_cards(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> SavedCardListResponse:
    cards = await card_service.list_cards(db, user_id)
    return SavedCardListResponse(cards=[SavedCardResponse.model_validate(card) for card in cards])


@router.patch(
    "/cards/{card_id}/default",
    response_model=SavedCardResponse,
    responses={404: {"model": ErrorResponse}},
    dependencies=[Depends(payment_rate_limit)],
    tags=["Saved Cards"],
)
async def set_default_card(
    card_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> SavedCardResponse:
    card = await card_service.set_default_card(db, user_id, card_id)
    return SavedCardResponse.model_validate(card)


@router.delete(
    "/cards/{card_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    dependencies=[Depends(payment_rate_limit)],
    tags=["Saved Cards"],
)
async def delete_card(
    card_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    await card_service.delete_card(db, user_id, card_id)
    return MessageResponse(message="Card deleted")


# =============================================================================
# WEBHOOK
# =============================================================================

@router.post(
    "/webhook/paystack",
    response_model=WebhookAck,
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Webhooks"],
    summary="Paystack Webhook",
)
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None, alias="x-paystack-signature"),
    store: BaseCounterStore = Depends(get_rate_limit_store),
    coordinator: SettlementCoordinator = Depends(_coordinator),
) -> WebhookAck:
    """
    Receive a signed Paystack event.

    Answers 200 once the delivery is durably recorded, even if processing
    fails afterwards; the unprocessed receipt is picked up on redelivery.
    """
    raw_body = await request.body()
    if not coordinator.gateway.verify_webhook_signature(raw_body, x_paystack_signature):
        await throttle_rejected_webhook(request, store)
    message = await coordinator.handle_webhook(raw_body, x_paystack_signature)
    return WebhookAck(message=message)
