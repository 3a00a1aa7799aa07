from decimal import Decimal

import pytest

from application.services.callback_processor import CallbackProcessor
from application.services.retry_orchestrator import RetryOrchestrator
from domain.common.exceptions import Conflict, GatewayUnavailable, NotFound
from domain.payment.entity import PaymentStatus, ResolutionSource


async def _failed_payment(uow_factory, result_code="1032"):
    async with uow_factory() as uow:
        payment = await uow.store.create_payment(Decimal("25"), "KES", "INV-9", "254708374149", "Order 9")
        attempt = await uow.store.create_attempt(
            payment.id,
            correlation_id="ws_CO_first",
            counterparty_id=None,
            phone="254708374149",
            amount=Decimal("25"),
        )
        await uow.store.mark_attempt_result(
            attempt.id, result_code, "Request cancelled by user", source=ResolutionSource.CALLBACK
        )
    return payment, attempt


@pytest.mark.asyncio
async def test_retry_creates_new_attempt_and_reopens(uow_factory, fake_gateway):
    payment, first = await _failed_payment(uow_factory)

    view = await RetryOrchestrator(fake_gateway, uow_factory).retry(payment.id)

    assert view.accepted
    assert view.payment_status == "pending"
    assert view.attempt_id != first.id
    assert fake_gateway.push_calls == [{"phone": "254708374149", "amount": 25, "reference": "INV-9"}]

    async with uow_factory(readonly=True) as uow:
        attempts = await uow.store.list_attempts(payment.id)
        reloaded = await uow.store.get_payment(payment.id)
    assert [a.id for a in attempts] == [first.id, view.attempt_id]
    # the failed attempt is never rewritten
    assert attempts[0].result_code == "1032"
    assert attempts[1].result_code is None
    assert reloaded.status == PaymentStatus.PENDING
    assert reloaded.failure_reason is None


@pytest.mark.asyncio
async def test_retry_then_success_callback(uow_factory, fake_gateway, stk_callback):
    payment, _ = await _failed_payment(uow_factory)
    view = await RetryOrchestrator(fake_gateway, uow_factory).retry(payment.id)

    await CallbackProcessor(uow_factory).handle_notification(stk_callback(view.correlation_id, amount=25))

    async with uow_factory(readonly=True) as uow:
        reloaded = await uow.store.get_payment(payment.id)
        latest = await uow.store.latest_attempt(payment.id)
    assert reloaded.status == PaymentStatus.COMPLETED
    assert latest.id == view.attempt_id
    assert latest.is_successful


@pytest.mark.asyncio
async def test_rejected_retry_keeps_payment_failed(uow_factory, fake_gateway):
    payment, first = await _failed_payment(uow_factory)
    fake_gateway.push_queue.append("1")

    view = await RetryOrchestrator(fake_gateway, uow_factory).retry(payment.id)

    assert not view.accepted
    assert view.rejection.result_code == "1"
    assert view.payment_status == "failed"
    async with uow_factory(readonly=True) as uow:
        attempts = await uow.store.list_attempts(payment.id)
    assert len(attempts) == 2
    assert attempts[1].result_code == "1"
    assert attempts[1].resolved_by == ResolutionSource.PUSH


@pytest.mark.asyncio
async def test_retry_rejected_for_pending_or_completed(uow_factory, fake_gateway):
    async with uow_factory() as uow:
        payment = await uow.store.create_payment(Decimal("25"), "KES", "INV-1", "254708374149")
        attempt = await uow.store.create_attempt(
            payment.id,
            correlation_id="ws_CO_p",
            counterparty_id=None,
            phone="254708374149",
            amount=Decimal("25"),
        )
    orchestrator = RetryOrchestrator(fake_gateway, uow_factory)

    with pytest.raises(Conflict):
        await orchestrator.retry(payment.id)

    async with uow_factory() as uow:
        await uow.store.mark_attempt_result(attempt.id, "0", "ok", "RCPT", source=ResolutionSource.CALLBACK)

    with pytest.raises(Conflict):
        await orchestrator.retry(payment.id)
    assert fake_gateway.push_calls == []


@pytest.mark.asyncio
async def test_retry_unknown_payment(uow_factory, fake_gateway):
    with pytest.raises(NotFound):
        await RetryOrchestrator(fake_gateway, uow_factory).retry(12345)


@pytest.mark.asyncio
async def test_gateway_outage_leaves_payment_failed(uow_factory, fake_gateway):
    payment, _ = await _failed_payment(uow_factory)
    fake_gateway.push_queue.append(GatewayUnavailable("down", operation="initiate_push"))

    with pytest.raises(GatewayUnavailable):
        await RetryOrchestrator(fake_gateway, uow_factory).retry(payment.id)

    async with uow_factory(readonly=True) as uow:
        reloaded = await uow.store.get_payment(payment.id)
        attempts = await uow.store.list_attempts(payment.id)
    assert reloaded.status == PaymentStatus.FAILED
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_second_retry_loses_the_reopen(uow_factory, fake_gateway):
    payment, _ = await _failed_payment(uow_factory)
    orchestrator = RetryOrchestrator(fake_gateway, uow_factory)
    await orchestrator.retry(payment.id)

    # the first retry already reopened the payment and holds the pending attempt
    with pytest.raises(Conflict):
        await orchestrator.retry(payment.id)
    assert len(fake_gateway.push_calls) == 1
