"""
Saved card authorizations.

Only reusable gateway authorizations are stored, one row per
(user, card signature). The first card a user saves becomes the default.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from food_ordering.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from food_ordering.database import transaction
from food_ordering.models import PaymentStatus, SavedCard
from food_ordering.services import repository
from food_ordering.services.payment import BasePaymentGateway, CardAuthorization

logger = logging.getLogger(__name__)


def _apply_authorization(card: SavedCard, authorization: CardAuthorization) -> None:
    card.authorization_code = authorization.authorization_code
    card.last4 = authorization.last4
    card.exp_month = authorization.exp_month
    card.exp_year = authorization.exp_year
    card.card_type = authorization.card_type
    card.bank = authorization.bank
    card.account_name = authorization.account_name
    card.reusable = True


async def _find_by_signature(session: AsyncSession, user_id: str, signature: str) -> Optional[SavedCard]:
    result = await session.execute(
        select(SavedCard)
        .where(SavedCard.user_id == user_id, SavedCard.signature == signature)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_saved_card(
    session: AsyncSession,
    user_id: str,
    authorization: Optional[CardAuthorization],
    provider: str = "paystack",
) -> Optional[SavedCard]:
    """
    Save or refresh a reusable authorization. Caller's transaction.

    Non-reusable or empty authorizations are ignored (returns None).
    """
    if authorization is None or not authorization.reusable:
        return None

    signature = authorization.signature or authorization.authorization_code
    card = await _find_by_signature(session, user_id, signature)
    if card is not None:
        _apply_authorization(card, authorization)
        return card

    has_default = (await session.execute(
        select(SavedCard.id).where(SavedCard.user_id == user_id, SavedCard.is_default.is_(True)).limit(1)
    )).scalar_one_or_none() is not None

    card = SavedCard(user_id=user_id, provider=provider, signature=signature, is_default=not has_default)
    _apply_authorization(card, authorization)
    try:
        async with session.begin_nested():
            session.add(card)
    except IntegrityError:
        # a concurrent request saved the same card first
        card = await _find_by_signature(session, user_id, signature)
        if card is None:
            raise
        _apply_authorization(card, authorization)
        return card

    logger.info(f"Saved card ****{authorization.last4 or '????'} for user {user_id}")
    return card


async def attach_card(
    session: AsyncSession,
    gateway: BasePaymentGateway,
    user_id: str,
    reference: str,
) -> SavedCard:
    """Save the card used for one of the caller's successful payments."""
    async with transaction(session):
        payment = await repository.get_payment_by_reference(session, reference)
        if payment is None:
            raise NotFoundError("Payment not found", reason="payment_not_found")
        if payment.user_id != user_id:
            raise ForbiddenError("Forbidden")
        if payment.status != PaymentStatus.SUCCESS:
            raise ValidationError("Payment is not successful", reason="payment_not_successful")

    remote = await gateway.verify_transaction(reference)
    if not remote.is_success or remote.authorization is None or not remote.authorization.reusable:
        raise ValidationError("Card authorization is not reusable", reason="card_not_reusable")

    async with transaction(session):
        card = await upsert_saved_card(session, user_id, remote.authorization, gateway.provider_name)
    return card


async def list_cards(session: AsyncSession, user_id: str) -> list[SavedCard]:
    async with transaction(session):
        result = await session.execute(
            select(SavedCard)
            .where(SavedCard.user_id == user_id)
            .order_by(SavedCard.is_default.desc(), SavedCard.created_at.desc())
        )
        return list(result.scalars().all())


async def set_default_card(session: AsyncSession, user_id: str, card_id: str) -> SavedCard:
    async with transaction(session):
        card = await repository.get_saved_card(session, card_id, user_id, for_update=True)
        if card is None:
            raise NotFoundError("Card not found", reason="card_not_found")
        await session.execute(
            update(SavedCard)
            .where(SavedCard.user_id == user_id, SavedCard.id != card.id)
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        card.is_default = True
    return card


async def delete_card(session: AsyncSession, user_id: str, card_id: str) -> None:
    """Delete a card; the most recent remaining card inherits the default flag."""
    async with transaction(session):
        card = await repository.get_saved_card(session, card_id, user_id, for_update=True)
        if card is None:
            raise NotFoundError("Card not found", reason="card_not_found")
        was_default = card.is_default
        await session.delete(card)
        await session.flush()

        if was_default:
            result = await session.execute(
                select(SavedCard)
                .where(SavedCard.user_id == user_id)
                .order_by(SavedCard.created_at.desc())
                .limit(1)
                .with_for_update()
            )
            successor = result.scalar_one_or_none()
            if successor is not None:
                successor.is_default = True
    logger.info(f"Deleted card {card_id} for user {user_id}")
