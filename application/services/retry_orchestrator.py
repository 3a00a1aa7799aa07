"""
Retry orchestrator - starts a fresh attempt for a failed payment.

A retry never touches an existing attempt. Inside one transaction it
first claims the payment (conditional failed -> pending), then pushes
with the payment's original phone, amount and reference, then inserts the
new attempt. A concurrent retry loses the claim before any push is sent.
If the push raises, the transaction rolls back and the payment is failed
again; a rejected push is recorded as a failed attempt through the usual
guarded transition.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.payments import AttemptView
from application.ports.payment_gateway import MobileMoneyGateway
from core.logging_config import get_logger
from domain.common.exceptions import Conflict, NotFound
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Attempt, Failed, Payment, PaymentStatus, ResolutionSource
from domain.payment.service import PaymentDomainService


logger = get_logger(__name__)


class RetryOrchestrator:
    def __init__(
        self,
        gateway: MobileMoneyGateway,
        uow_factory: Callable[..., AbstractUnitOfWork],
    ) -> None:
        self._gateway = gateway
        self._uow_factory = uow_factory

    @staticmethod
    def _ensure_retryable(payment: Payment, latest: Optional[Attempt]) -> None:
        details = {"payment_id": payment.id, "payment_status": payment.status.value}
        if payment.status == PaymentStatus.COMPLETED or (latest is not None and latest.is_successful):
            raise Conflict("Payment is already completed", details=details)
        if latest is None:
            raise Conflict("Payment has no attempt to retry", details=details)
        if not latest.is_terminal:
            details["attempt_id"] = latest.id
            raise Conflict("Latest attempt is still pending", details=details)

    async def retry(self, payment_id: int) -> AttemptView:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.store.get_payment(payment_id)
            if payment is None:
                raise NotFound("Payment", payment_id)
            latest = await uow.store.latest_attempt(payment_id)

        self._ensure_retryable(payment, latest)

        async with self._uow_factory() as uow:
            if not await uow.store.reopen_payment(payment_id):
                logger.warning("retry_conflict", payment_id=payment_id)
                raise Conflict(
                    "Payment was changed by a concurrent request",
                    details={"payment_id": payment_id},
                )

            push = await self._gateway.initiate_push(
                latest.phone,
                payment.amount,
                payment.reference,
                payment.description,
            )

            attempt = await uow.store.create_attempt(
                payment_id,
                correlation_id=push.correlation_id,
                counterparty_id=push.counterparty_id,
                phone=push.phone,
                amount=push.amount,
            )
            if push.accepted:
                payment = await uow.store.get_payment(payment_id)
            else:
                result = await PaymentDomainService(uow.store).apply_outcome(
                    attempt,
                    Failed(result_code=push.result_code, result_desc=push.result_desc),
                    source=ResolutionSource.PUSH,
                )
                attempt, payment = result.attempt, result.payment

        logger.info(
            "payment_retried",
            payment_id=payment_id,
            attempt_id=attempt.id,
            previous_attempt_id=latest.id,
            accepted=push.accepted,
            result_code=push.result_code,
        )
        return AttemptView.build(payment, attempt, push)
