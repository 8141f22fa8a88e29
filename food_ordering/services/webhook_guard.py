"""
Webhook Idempotency Guard

Turns an at-least-once delivery channel into an effectively-once business
outcome. Each signed delivery is fingerprinted and recorded once per
(provider, signature fingerprint):

    new               -> first sighting, process it
    already_processed -> a previous delivery committed its effects; ack only
    in_flight         -> recorded but never finished (crash or concurrent
                         twin); process it under the receipt's row lock

``processed_at`` is written only by ``mark_processed``, which the caller runs
inside the same transaction as the event's business effects.
"""

import enum
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from food_ordering.core.timeutils import utcnow
from food_ordering.database import transaction
from food_ordering.models import WebhookEventReceipt

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


class GuardDecision(str, enum.Enum):
    NEW = "new"
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"


@dataclass(frozen=True)
class GuardResult:
    decision: GuardDecision
    receipt_id: str

    @property
    def should_process(self) -> bool:
        return self.decision != GuardDecision.ALREADY_PROCESSED


def fingerprint(value: Union[str, bytes]) -> str:
    """SHA-256 hex digest."""
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def signature_fingerprint(signature: str) -> str:
    return fingerprint((signature or "").strip().lower())


async def _insert_if_absent(session: AsyncSession, values: dict) -> bool:
    """Insert the receipt unless (provider, signature_hash) exists; True if inserted."""
    dialect = session.get_bind().dialect.name
    insert_fn = _UPSERT_DIALECTS.get(dialect)

    if insert_fn is not None:
        stmt = (
            insert_fn(WebhookEventReceipt)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["provider", "signature_hash"])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    # No atomic upsert: try the insert in a savepoint and treat a unique
    # violation as "already recorded"
    try:
        async with session.begin_nested():
            session.add(WebhookEventReceipt(**values))
        return True
    except IntegrityError:
        return False


async def record_event(
    session: AsyncSession,
    provider: str,
    signature: str,
    raw_body: Union[str, bytes],
    event_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> GuardResult:
    """
    Durably record a verified delivery in its own transaction.

    The signature must already have been verified by the gateway client.
    """
    signature_hash = signature_fingerprint(signature)
    payload_hash = fingerprint(raw_body)

    async with transaction(session):
        inserted = await _insert_if_absent(session, {
            "provider": provider,
            "event_id": event_id,
            "reference": reference,
            "signature_hash": signature_hash,
            "payload_hash": payload_hash,
        })
        result = await session.execute(
            select(WebhookEventReceipt)
            .where(
                WebhookEventReceipt.provider == provider,
                WebhookEventReceipt.signature_hash == signature_hash,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        receipt = result.scalar_one()

        if inserted:
            decision = GuardDecision.NEW
        elif receipt.processed_at is not None:
            decision = GuardDecision.ALREADY_PROCESSED
        else:
            decision = GuardDecision.IN_FLIGHT

    logger.info(
        f"Webhook {provider} event={event_id or '-'} reference={reference or '-'} "
        f"fingerprint={signature_hash[:12]}: {decision.value}"
    )
    return GuardResult(decision=decision, receipt_id=receipt.id)


async def claim_event(
    session: AsyncSession,
    receipt_id: str,
    event_id: Optional[str] = None,
    reference: Optional[str] = None,
    payload_hash: Optional[str] = None,
) -> Optional[WebhookEventReceipt]:
    """
    Lock the receipt inside the caller's processing transaction.

    Returns ``None`` when a concurrent twin finished first.
    """
    result = await session.execute(
        select(WebhookEventReceipt)
        .where(WebhookEventReceipt.id == receipt_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    receipt = result.scalar_one_or_none()
    if receipt is None or receipt.processed_at is not None:
        return None

    if event_id and not receipt.event_id:
        receipt.event_id = event_id
    if reference and not receipt.reference:
        receipt.reference = reference
    if payload_hash:
        receipt.payload_hash = payload_hash
    return receipt


async def mark_processed(session: AsyncSession, receipt_id: str) -> None:
    """Caller's transaction: commits together with the event's effects."""
    await session.execute(
        update(WebhookEventReceipt)
        .where(
            WebhookEventReceipt.id == receipt_id,
            WebhookEventReceipt.processed_at.is_(None),
        )
        .values(processed_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
