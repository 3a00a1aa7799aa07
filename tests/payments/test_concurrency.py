"""Races between separate units of work on a file database."""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.dtos.payments import AttemptView
from application.services.callback_processor import CallbackProcessor
from application.services.retry_orchestrator import RetryOrchestrator
from application.services.verifier import Verifier
from core.settings import VerifierSettings
from domain.common.exceptions import Conflict
from domain.payment.entity import PaymentStatus, ResolutionSource


async def _pending_attempt(uow_factory, correlation_id="ws_CO_race"):
    async with uow_factory() as uow:
        payment = await uow.store.create_payment(Decimal("10"), "KES", "INV-R", "254708374149")
        attempt = await uow.store.create_attempt(
            payment.id,
            correlation_id=correlation_id,
            counterparty_id=None,
            phone="254708374149",
            amount=Decimal("10"),
        )
    return payment, attempt


async def _load(uow_factory, payment_id):
    async with uow_factory(readonly=True) as uow:
        payment = await uow.store.get_payment(payment_id)
        attempts = await uow.store.list_attempts(payment_id)
        callbacks = await uow.store.list_unprocessed_callbacks()
    return payment, attempts, callbacks


@pytest.mark.asyncio
async def test_callback_and_verifier_race_settle_once(file_uow_factory, fake_gateway, stk_callback):
    payment, attempt = await _pending_attempt(file_uow_factory)
    fake_gateway.resolve("ws_CO_race", "1", "Insufficient funds")
    verifier = Verifier(
        fake_gateway,
        file_uow_factory,
        VerifierSettings(grace_seconds=60),
        clock=lambda: datetime.now(timezone.utc) + timedelta(seconds=120),
    )
    processor = CallbackProcessor(file_uow_factory)

    _, reconciled = await asyncio.gather(
        processor.handle_notification(stk_callback("ws_CO_race", amount=10)),
        verifier.verify_pending(),
    )

    payment, attempts, unprocessed = await _load(file_uow_factory, payment.id)
    assert len(attempts) == 1
    settled = attempts[0]
    if settled.result_code == "0":
        assert settled.resolved_by == ResolutionSource.CALLBACK
        assert payment.status == PaymentStatus.COMPLETED
        assert reconciled == 0
    else:
        assert settled.result_code == "1"
        assert settled.resolved_by == ResolutionSource.VERIFIER
        assert payment.status == PaymentStatus.FAILED
        assert reconciled == 1
    # the callback record is processed either way, as applied or as a duplicate
    assert unprocessed == []


@pytest.mark.asyncio
async def test_conflicting_callbacks_settle_once(file_uow_factory, stk_callback):
    payment, _ = await _pending_attempt(file_uow_factory)
    processor = CallbackProcessor(file_uow_factory)

    await asyncio.gather(
        processor.handle_notification(stk_callback("ws_CO_race", amount=10)),
        processor.handle_notification(stk_callback("ws_CO_race", result_code=1032, result_desc="Cancelled")),
    )

    payment, attempts, unprocessed = await _load(file_uow_factory, payment.id)
    assert attempts[0].result_code in ("0", "1032")
    expected = PaymentStatus.COMPLETED if attempts[0].result_code == "0" else PaymentStatus.FAILED
    assert payment.status == expected
    assert unprocessed == []


@pytest.mark.asyncio
async def test_concurrent_retries_send_one_push(file_uow_factory, fake_gateway):
    payment, attempt = await _pending_attempt(file_uow_factory)
    async with file_uow_factory() as uow:
        await uow.store.mark_attempt_result(attempt.id, "1032", "Cancelled", source=ResolutionSource.CALLBACK)
    orchestrator = RetryOrchestrator(fake_gateway, file_uow_factory)

    results = await asyncio.gather(
        orchestrator.retry(payment.id),
        orchestrator.retry(payment.id),
        return_exceptions=True,
    )

    assert sorted(type(r).__name__ for r in results) == sorted([AttemptView.__name__, Conflict.__name__])
    assert len(fake_gateway.push_calls) == 1

    payment, attempts, _ = await _load(file_uow_factory, payment.id)
    assert payment.status == PaymentStatus.PENDING
    assert [a.result_code for a in attempts] == ["1032", None]
    winner = next(r for r in results if isinstance(r, AttemptView))
    assert attempts[1].correlation_id == winner.correlation_id
