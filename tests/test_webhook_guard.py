import asyncio

from sqlalchemy import select

from food_ordering.database import transaction
from food_ordering.models import WebhookEventReceipt
from food_ordering.services.webhook_guard import (
    GuardDecision,
    claim_event,
    fingerprint,
    mark_processed,
    record_event,
    signature_fingerprint,
)

BODY = b'{"event":"charge.success","data":{"id":1,"reference":"PSK-ABCDEF12-1"}}'
SIGNATURE = "ab" * 64


class TestFingerprints:
    def test_fingerprint_is_sha256_hex(self):
        assert fingerprint(BODY) == fingerprint(BODY.decode())
        assert len(fingerprint(BODY)) == 64

    def test_signature_fingerprint_ignores_case_and_padding(self):
        assert signature_fingerprint(f"  {SIGNATURE.upper()} ") == signature_fingerprint(SIGNATURE)


class TestRecordEvent:
    async def test_lifecycle(self, session, fetch):
        first = await record_event(session, "paystack", SIGNATURE, BODY, event_id="1", reference="PSK-ABCDEF12-1")
        assert first.decision == GuardDecision.NEW
        assert first.should_process

        # recorded but never finished: a redelivery must process it
        second = await record_event(session, "paystack", SIGNATURE, BODY)
        assert second.decision == GuardDecision.IN_FLIGHT
        assert second.receipt_id == first.receipt_id

        async with transaction(session):
            receipt = await claim_event(session, first.receipt_id, payload_hash=fingerprint(BODY))
            assert receipt is not None
            await mark_processed(session, receipt.id)

        third = await record_event(session, "paystack", SIGNATURE, BODY)
        assert third.decision == GuardDecision.ALREADY_PROCESSED
        assert not third.should_process

        stored = await fetch(WebhookEventReceipt, first.receipt_id)
        assert stored.processed_at is not None
        assert stored.event_id == "1"
        assert stored.reference == "PSK-ABCDEF12-1"

    async def test_claim_after_processing_returns_none(self, session):
        guard = await record_event(session, "paystack", SIGNATURE, BODY)
        async with transaction(session):
            await mark_processed(session, guard.receipt_id)

        async with transaction(session):
            assert await claim_event(session, guard.receipt_id) is None

    async def test_providers_are_separate_namespaces(self, session):
        paystack = await record_event(session, "paystack", SIGNATURE, BODY)
        other = await record_event(session, "flutterwave", SIGNATURE, BODY)
        assert paystack.decision == other.decision == GuardDecision.NEW
        assert paystack.receipt_id != other.receipt_id

    async def test_concurrent_deliveries_record_once(self, session_factory, fetch_all):
        async def deliver():
            async with session_factory() as s:
                return await record_event(s, "paystack", SIGNATURE, BODY)

        results = await asyncio.gather(*[deliver() for _ in range(10)])

        assert [r.decision for r in results].count(GuardDecision.NEW) == 1
        assert len({r.receipt_id for r in results}) == 1
        assert len(await fetch_all(select(WebhookEventReceipt))) == 1
