from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.common.exceptions import Conflict, NotFound
from domain.payment.entity import PaymentStatus, ResolutionSource


async def _payment_with_attempt(uow_factory, correlation_id="ws_CO_1"):
    async with uow_factory() as uow:
        payment = await uow.store.create_payment(Decimal("100"), "kes", "INV-1", "254708374149", "Order")
        attempt = await uow.store.create_attempt(
            payment.id,
            correlation_id=correlation_id,
            counterparty_id="29115-1",
            phone="254708374149",
            amount=Decimal("100"),
        )
    return payment, attempt


@pytest.mark.asyncio
async def test_create_payment_and_attempt(uow_factory):
    payment, attempt = await _payment_with_attempt(uow_factory)
    assert payment.status == PaymentStatus.PENDING
    assert payment.currency == "KES"
    assert attempt.payment_id == payment.id
    assert not attempt.is_terminal

    async with uow_factory(readonly=True) as uow:
        found = await uow.store.find_attempt_by_correlation_id("ws_CO_1")
        latest = await uow.store.latest_attempt(payment.id)
    assert found.id == attempt.id
    assert latest.id == attempt.id


@pytest.mark.asyncio
async def test_second_pending_attempt_is_rejected(uow_factory):
    payment, _ = await _payment_with_attempt(uow_factory)
    with pytest.raises(Conflict):
        async with uow_factory() as uow:
            await uow.store.create_attempt(
                payment.id,
                correlation_id="ws_CO_2",
                counterparty_id=None,
                phone="254708374149",
                amount=Decimal("100"),
            )
    async with uow_factory(readonly=True) as uow:
        attempts = await uow.store.list_attempts(payment.id)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_correlation_id_is_unique(uow_factory):
    payment, attempt = await _payment_with_attempt(uow_factory)
    async with uow_factory() as uow:
        await uow.store.mark_attempt_result(attempt.id, "1032", "Cancelled", source=ResolutionSource.CALLBACK)

    with pytest.raises(Conflict):
        async with uow_factory() as uow:
            await uow.store.create_attempt(
                payment.id,
                correlation_id="ws_CO_1",
                counterparty_id=None,
                phone="254708374149",
                amount=Decimal("100"),
            )


@pytest.mark.asyncio
async def test_attempt_for_unknown_payment(uow_factory):
    with pytest.raises(NotFound):
        async with uow_factory() as uow:
            await uow.store.create_attempt(
                999,
                correlation_id="ws_CO_x",
                counterparty_id=None,
                phone="254708374149",
                amount=Decimal("1"),
            )


@pytest.mark.asyncio
async def test_mark_result_is_applied_once(uow_factory):
    payment, attempt = await _payment_with_attempt(uow_factory)

    async with uow_factory() as uow:
        first = await uow.store.mark_attempt_result(
            attempt.id,
            "0",
            "Processed",
            "NLJ7RT61SV",
            source=ResolutionSource.CALLBACK,
            transaction_time="20191219102115",
            metadata={"Amount": 100},
        )
    assert first.applied
    assert first.attempt.result_code == "0"
    assert first.attempt.receipt_number == "NLJ7RT61SV"
    assert first.attempt.is_callback_received
    assert first.attempt.resolved_by == ResolutionSource.CALLBACK
    assert first.payment.status == PaymentStatus.COMPLETED
    assert first.payment.completed_at is not None

    async with uow_factory() as uow:
        second = await uow.store.mark_attempt_result(
            attempt.id, "1032", "Cancelled", source=ResolutionSource.VERIFIER
        )
    assert not second.applied
    assert second.attempt.result_code == "0"
    assert second.attempt.resolved_by == ResolutionSource.CALLBACK
    assert second.payment.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_failure_sets_reason(uow_factory):
    payment, attempt = await _payment_with_attempt(uow_factory)
    async with uow_factory() as uow:
        result = await uow.store.mark_attempt_result(
            attempt.id, "1", "Insufficient funds", source=ResolutionSource.VERIFIER
        )
    assert result.applied
    assert result.payment.status == PaymentStatus.FAILED
    assert result.payment.failure_reason == "Insufficient funds"
    assert result.payment.failed_at is not None
    assert not result.attempt.is_callback_received


@pytest.mark.asyncio
async def test_mark_unknown_attempt(uow_factory):
    with pytest.raises(NotFound):
        async with uow_factory() as uow:
            await uow.store.mark_attempt_result(42, "0", None, source=ResolutionSource.CALLBACK)


@pytest.mark.asyncio
async def test_reopen_only_from_failed(uow_factory):
    payment, attempt = await _payment_with_attempt(uow_factory)
    async with uow_factory() as uow:
        assert await uow.store.reopen_payment(payment.id) is False

    async with uow_factory() as uow:
        await uow.store.mark_attempt_result(attempt.id, "1037", "DS timeout", source=ResolutionSource.CALLBACK)

    async with uow_factory() as uow:
        assert await uow.store.reopen_payment(payment.id) is True
        reopened = await uow.store.get_payment(payment.id)
    assert reopened.status == PaymentStatus.PENDING
    assert reopened.failure_reason is None
    assert reopened.failed_at is None


@pytest.mark.asyncio
async def test_stale_attempt_selection(uow_factory):
    payment, attempt = await _payment_with_attempt(uow_factory)
    now = datetime.now(timezone.utc)

    async with uow_factory(readonly=True) as uow:
        # still inside the grace window
        assert await uow.store.find_stale_attempts(now - timedelta(seconds=60), now) == []
        stale = await uow.store.find_stale_attempts(now + timedelta(seconds=60), now + timedelta(seconds=60))
    assert [a.id for a in stale] == [attempt.id]

    async with uow_factory() as uow:
        polled = await uow.store.record_poll(attempt.id)
    assert polled.poll_count == 1
    assert polled.last_polled_at is not None

    async with uow_factory(readonly=True) as uow:
        # polled after the cutoff, so it waits for the next interval
        assert await uow.store.find_stale_attempts(now + timedelta(seconds=60), now - timedelta(seconds=60)) == []

    async with uow_factory() as uow:
        flagged = await uow.store.record_poll(attempt.id, review_reason="still processing")
    assert flagged.needs_review
    assert flagged.poll_count == 2

    async with uow_factory(readonly=True) as uow:
        later = now + timedelta(hours=1)
        assert await uow.store.find_stale_attempts(later, later) == []


@pytest.mark.asyncio
async def test_callback_records(uow_factory):
    async with uow_factory() as uow:
        orphan = await uow.store.record_callback({"Body": {}}, correlation_id="ws_CO_unknown")
        handled = await uow.store.record_callback({"Body": {}}, correlation_id="ws_CO_1")
        await uow.store.annotate_callback(orphan.id, "orphan")
        await uow.store.mark_callback_processed(handled.id, notes="duplicate")

    async with uow_factory(readonly=True) as uow:
        pending = await uow.store.list_unprocessed_callbacks()
    assert [r.id for r in pending] == [orphan.id]
    assert pending[0].processing_notes == "orphan"
    assert pending[0].correlation_id == "ws_CO_unknown"


@pytest.mark.asyncio
async def test_replayable_callbacks_skip_deferred_and_abandoned(uow_factory):
    now = datetime.now(timezone.utc)
    async with uow_factory() as uow:
        due = await uow.store.record_callback({"Body": {}}, correlation_id="ws_CO_due")
        deferred = await uow.store.record_callback({"Body": {}}, correlation_id="ws_CO_later")
        abandoned = await uow.store.record_callback({"raw": "x"}, notes="malformed", abandoned=True)
        await uow.store.annotate_callback(
            deferred.id, "orphan", replay_count=1, next_replay_at=now + timedelta(minutes=5)
        )

    async with uow_factory(readonly=True) as uow:
        replayable = await uow.store.list_replayable_callbacks(now)
        later = await uow.store.list_replayable_callbacks(now + timedelta(minutes=10))
        everything = await uow.store.list_unprocessed_callbacks()

    assert [r.id for r in replayable] == [due.id]
    assert [r.id for r in later] == [due.id, deferred.id]
    assert {r.id for r in everything} == {due.id, deferred.id, abandoned.id}
    assert next(r for r in everything if r.id == deferred.id).replay_count == 1
    assert next(r for r in everything if r.id == abandoned.id).abandoned
