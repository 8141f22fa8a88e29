from datetime import timedelta

import pytest
from sqlalchemy import select

from food_ordering.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from food_ordering.core.timeutils import utcnow
from food_ordering.database import transaction
from food_ordering.models import SavedCard
from food_ordering.services import cards as card_service
from food_ordering.services.payment import CardAuthorization
from food_ordering.services.settlement import SettlementCoordinator

AUTHORIZATION = CardAuthorization(
    authorization_code="AUTH_72btv547",
    signature="SIG_attach_1",
    reusable=True,
    last4="1381",
    exp_month="01",
    exp_year="2031",
    card_type="mastercard",
    bank="TEST BANK",
)


@pytest.fixture
def coordinator(session, gateway, receipts):
    return SettlementCoordinator(session, gateway, receipts)


@pytest.fixture
def seed_cards(session_factory, user):
    async def _seed(count: int) -> list[SavedCard]:
        now = utcnow()
        async with session_factory() as s:
            async with transaction(s):
                cards = [
                    SavedCard(
                        user_id=user.id,
                        authorization_code=f"AUTH_{i}",
                        signature=f"SIG_{i}",
                        last4=f"000{i}",
                        is_default=(i == 0),
                        created_at=now + timedelta(minutes=i),
                    )
                    for i in range(count)
                ]
                s.add_all(cards)
        return cards
    return _seed


async def _paid_reference(coordinator, gateway, user, order, authorization=AUTHORIZATION) -> str:
    init = await coordinator.initialize_payment(user.id, order.id)
    gateway.set_outcome(init.reference, "success", authorization=authorization)
    await coordinator.verify_payment(user.id, init.reference)
    return init.reference


class TestAttachCard:
    async def test_attach_after_payment(self, session, coordinator, gateway, user, menu, make_order, fetch_all):
        order = await make_order(user, menu)
        reference = await _paid_reference(coordinator, gateway, user, order)
        # not saved at checkout
        assert await fetch_all(select(SavedCard)) == []

        card = await card_service.attach_card(session, gateway, user.id, reference)

        assert card.last4 == "1381"
        assert card.is_default
        assert card.provider == "paystack"

        # attaching the same card again refreshes the existing row
        await card_service.attach_card(session, gateway, user.id, reference)
        assert len(await fetch_all(select(SavedCard))) == 1

    async def test_requires_successful_payment(self, session, coordinator, gateway, user, menu, make_order):
        order = await make_order(user, menu)
        init = await coordinator.initialize_payment(user.id, order.id)
        with pytest.raises(ValidationError, match="not successful"):
            await card_service.attach_card(session, gateway, user.id, init.reference)

    async def test_foreign_payment(self, session, coordinator, gateway, user, make_user, menu, make_order):
        order = await make_order(user, menu)
        reference = await _paid_reference(coordinator, gateway, user, order)
        stranger = await make_user(email="eve@example.com")
        with pytest.raises(ForbiddenError):
            await card_service.attach_card(session, gateway, stranger.id, reference)

    async def test_unknown_payment(self, session, gateway, user):
        with pytest.raises(NotFoundError):
            await card_service.attach_card(session, gateway, user.id, "PSK-NOTHERE-1")

    async def test_non_reusable_authorization(self, session, coordinator, gateway, user, menu, make_order):
        order = await make_order(user, menu)
        one_off = CardAuthorization(authorization_code="AUTH_once", signature="SIG_once", reusable=False)
        reference = await _paid_reference(coordinator, gateway, user, order, authorization=one_off)
        with pytest.raises(ValidationError, match="not reusable"):
            await card_service.attach_card(session, gateway, user.id, reference)


class TestUpsertSavedCard:
    async def test_ignores_non_reusable(self, session, user):
        async with transaction(session):
            assert await card_service.upsert_saved_card(session, user.id, None) is None
            assert await card_service.upsert_saved_card(
                session, user.id, CardAuthorization(authorization_code="AUTH_x", reusable=False)
            ) is None

    async def test_second_card_is_not_default(self, session, user, seed_cards):
        await seed_cards(1)
        async with transaction(session):
            card = await card_service.upsert_saved_card(session, user.id, AUTHORIZATION)
        assert not card.is_default


class TestManageCards:
    async def test_list_default_first(self, session, user, seed_cards):
        await seed_cards(3)
        cards = await card_service.list_cards(session, user.id)
        assert [c.last4 for c in cards] == ["0000", "0002", "0001"]

    async def test_set_default_is_exclusive(self, session, user, seed_cards, fetch_all):
        cards = await seed_cards(3)
        await card_service.set_default_card(session, user.id, cards[2].id)

        stored = await fetch_all(select(SavedCard).where(SavedCard.is_default.is_(True)))
        assert [c.id for c in stored] == [cards[2].id]

    async def test_delete_default_promotes_newest(self, session, user, seed_cards, fetch, fetch_all):
        cards = await seed_cards(3)
        await card_service.delete_card(session, user.id, cards[0].id)

        assert await fetch(SavedCard, cards[0].id) is None
        [default] = await fetch_all(select(SavedCard).where(SavedCard.is_default.is_(True)))
        assert default.id == cards[2].id

    async def test_delete_unknown_card(self, session, user):
        with pytest.raises(NotFoundError):
            await card_service.delete_card(session, user.id, "missing")

    async def test_cards_are_scoped_to_owner(self, session, make_user, seed_cards):
        cards = await seed_cards(1)
        stranger = await make_user(email="eve@example.com")
        with pytest.raises(NotFoundError):
            await card_service.set_default_card(session, stranger.id, cards[0].id)
