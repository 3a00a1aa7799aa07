from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.services.callback_processor import CallbackProcessor
from core.settings import WebhookSettings
from domain.payment.entity import PaymentStatus, ResolutionSource


async def _pending_attempt(uow_factory, correlation_id="ws_CO_000001", amount="1"):
    async with uow_factory() as uow:
        payment = await uow.store.create_payment(Decimal(amount), "KES", "INV-1", "254708374149")
        attempt = await uow.store.create_attempt(
            payment.id,
            correlation_id=correlation_id,
            counterparty_id="29115-1",
            phone="254708374149",
            amount=Decimal(amount),
        )
    return payment, attempt


async def _state(uow_factory, payment_id, attempt_id):
    async with uow_factory(readonly=True) as uow:
        payment = await uow.store.get_payment(payment_id)
        attempt = await uow.store.get_attempt(attempt_id)
        callbacks = await uow.store.list_unprocessed_callbacks()
    return payment, attempt, callbacks


@pytest.mark.asyncio
async def test_success_callback_completes_payment(uow_factory, stk_callback):
    payment, attempt = await _pending_attempt(uow_factory)
    processor = CallbackProcessor(uow_factory)

    await processor.handle_notification(stk_callback("ws_CO_000001"))

    payment, attempt, unprocessed = await _state(uow_factory, payment.id, attempt.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert attempt.result_code == "0"
    assert attempt.receipt_number == "NLJ7RT61SV"
    assert attempt.transaction_time == "20191219102115"
    assert attempt.resolved_by == ResolutionSource.CALLBACK
    assert attempt.is_callback_received
    assert attempt.callback_metadata["PhoneNumber"] == 254708374149
    # items without a value are dropped
    assert "Balance" not in attempt.callback_metadata
    assert unprocessed == []


@pytest.mark.asyncio
async def test_failure_callback_fails_payment(uow_factory, stk_callback):
    payment, attempt = await _pending_attempt(uow_factory)
    processor = CallbackProcessor(uow_factory)

    await processor.handle_notification(
        stk_callback("ws_CO_000001", result_code=1032, result_desc="Request cancelled by user")
    )

    payment, attempt, _ = await _state(uow_factory, payment.id, attempt.id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Request cancelled by user"
    assert attempt.result_code == "1032"
    assert attempt.receipt_number is None


@pytest.mark.asyncio
async def test_duplicate_callback_is_a_noop(uow_factory, stk_callback):
    payment, attempt = await _pending_attempt(uow_factory)
    processor = CallbackProcessor(uow_factory)

    await processor.handle_notification(stk_callback("ws_CO_000001"))
    await processor.handle_notification(stk_callback("ws_CO_000001", result_code=1, result_desc="late failure"))

    payment, attempt, unprocessed = await _state(uow_factory, payment.id, attempt.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert attempt.result_code == "0"
    assert unprocessed == []


@pytest.mark.asyncio
async def test_orphan_callback_is_kept_for_replay(uow_factory, stk_callback):
    processor = CallbackProcessor(uow_factory)

    await processor.handle_notification(stk_callback("ws_CO_unknown"))

    async with uow_factory(readonly=True) as uow:
        unprocessed = await uow.store.list_unprocessed_callbacks()
    assert len(unprocessed) == 1
    assert unprocessed[0].processing_notes == "orphan"
    assert unprocessed[0].correlation_id == "ws_CO_unknown"
    assert unprocessed[0].attempt_id is None


@pytest.mark.asyncio
async def test_malformed_payload_never_raises(uow_factory):
    processor = CallbackProcessor(uow_factory)

    await processor.handle_notification({"Body": {"stkCallback": {"ResultDesc": "no ids"}}})
    await processor.handle_notification("not json at all")

    async with uow_factory(readonly=True) as uow:
        unprocessed = await uow.store.list_unprocessed_callbacks()
    assert len(unprocessed) == 2
    assert all(r.processing_notes.startswith("malformed") for r in unprocessed)
    assert unprocessed[1].payload == {"raw": "not json at all"}


@pytest.mark.asyncio
async def test_generic_payload_shape(uow_factory):
    payment, attempt = await _pending_attempt(uow_factory, correlation_id="corr-1", amount="50")
    processor = CallbackProcessor(uow_factory)

    await processor.handle_notification(
        {
            "Body": {
                "Callback": {
                    "CorrelationId": "corr-1",
                    "CounterpartyId": "cp-1",
                    "ResultCode": "0",
                    "ResultDesc": "ok",
                    "Metadata": [
                        {"Name": "ReceiptNumber", "Value": "RCPT1"},
                        {"Name": "Amount", "Value": 50},
                    ],
                }
            }
        }
    )

    payment, attempt, _ = await _state(uow_factory, payment.id, attempt.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert attempt.receipt_number == "RCPT1"


@pytest.mark.asyncio
async def test_amount_mismatch_still_applies_result(uow_factory, stk_callback):
    payment, attempt = await _pending_attempt(uow_factory, amount="100")
    processor = CallbackProcessor(uow_factory)

    await processor.handle_notification(stk_callback("ws_CO_000001", amount=1))

    payment, attempt, _ = await _state(uow_factory, payment.id, attempt.id)
    assert payment.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_replay_applies_callbacks_that_arrived_early(uow_factory, stk_callback):
    processor = CallbackProcessor(uow_factory)

    # the notification lands before the attempt row exists
    await processor.handle_notification(stk_callback("ws_CO_000001"))
    await processor.handle_notification({"unexpected": True})
    payment, attempt = await _pending_attempt(uow_factory)

    processed = await processor.reprocess_pending()

    assert processed == 1
    payment, attempt, unprocessed = await _state(uow_factory, payment.id, attempt.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert attempt.receipt_number == "NLJ7RT61SV"
    # the malformed record is left for inspection
    assert len(unprocessed) == 1
    assert unprocessed[0].payload == {"unexpected": True}
    assert unprocessed[0].abandoned


@pytest.mark.asyncio
async def test_old_orphans_do_not_starve_newer_callbacks(uow_factory, stk_callback):
    processor = CallbackProcessor(uow_factory, WebhookSettings(reprocess_batch_size=100))
    for i in range(100):
        await processor.handle_notification(stk_callback(f"ws_CO_gone{i:03d}"))
    await processor.handle_notification(stk_callback("ws_CO_late"))
    payment, attempt = await _pending_attempt(uow_factory, correlation_id="ws_CO_late")

    # the first batch is all orphans; each one is pushed back
    assert await processor.reprocess_pending(100) == 0
    # the next sweep reaches the callback behind them
    assert await processor.reprocess_pending(100) == 1

    payment, attempt, unprocessed = await _state(uow_factory, payment.id, attempt.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert attempt.receipt_number == "NLJ7RT61SV"
    assert len(unprocessed) == 100
    assert all(r.replay_count == 1 and r.next_replay_at is not None for r in unprocessed)


@pytest.mark.asyncio
async def test_orphan_is_abandoned_after_max_replays(uow_factory, stk_callback):
    now = [datetime.now(timezone.utc)]
    processor = CallbackProcessor(
        uow_factory,
        WebhookSettings(orphan_max_replays=3, orphan_replay_backoff_seconds=60),
        clock=lambda: now[0],
    )
    await processor.handle_notification(stk_callback("ws_CO_never"))

    await processor.reprocess_pending()
    async with uow_factory(readonly=True) as uow:
        assert await uow.store.list_replayable_callbacks(now[0]) == []

    now[0] += timedelta(seconds=61)
    await processor.reprocess_pending()
    now[0] += timedelta(seconds=121)
    await processor.reprocess_pending()

    async with uow_factory(readonly=True) as uow:
        assert await uow.store.list_replayable_callbacks(now[0] + timedelta(days=1)) == []
        unprocessed = await uow.store.list_unprocessed_callbacks()
    assert len(unprocessed) == 1
    assert unprocessed[0].abandoned
    assert unprocessed[0].replay_count == 3
    assert unprocessed[0].processing_notes == "orphan: replays exhausted"


def test_orphan_replay_delay_doubles_and_caps():
    settings = WebhookSettings(orphan_replay_backoff_seconds=60, orphan_replay_max_backoff_seconds=300)
    assert [settings.orphan_replay_delay(n) for n in (1, 2, 3, 4)] == [60, 120, 240, 300]
