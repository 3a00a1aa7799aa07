"""
Verifier - active reconciliation for attempts whose callback never arrived.

A sweep picks pending attempts older than the grace window, asks the
gateway for their status and feeds definitive answers through the same
guarded transition the callback path uses. Whichever path lands first
wins; the other becomes a no-op.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from application.dtos.payments import QueryState, StatusQueryResult
from application.ports.payment_gateway import MobileMoneyGateway
from core.logging_config import get_logger
from core.settings import VerifierSettings
from domain.common.exceptions import BusinessException, GatewayUnavailable
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Attempt, Failed, ResolutionSource
from domain.payment.service import PaymentDomainService, resolve_outcome
from shared.codes.payment_codes import RECONCILIATION_NOT_FOUND_CODE


logger = get_logger(__name__)


class Verifier:
    def __init__(
        self,
        gateway: MobileMoneyGateway,
        uow_factory: Callable[..., AbstractUnitOfWork],
        settings: Optional[VerifierSettings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._gateway = gateway
        self._uow_factory = uow_factory
        self._settings = settings or VerifierSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def verify_pending(self) -> int:
        """Run one sweep. Returns how many attempts reached a terminal state."""
        now = self._clock()
        older_than = now - timedelta(seconds=self._settings.grace_seconds)
        polled_before = now - timedelta(seconds=self._settings.poll_interval_seconds)

        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.store.find_stale_attempts(
                older_than, polled_before, limit=self._settings.batch_size
            )

        reconciled = 0
        for attempt in stale:
            try:
                if await self._verify_one(attempt, now):
                    reconciled += 1
            except BusinessException as e:
                logger.error(
                    "verifier_attempt_failed",
                    attempt_id=attempt.id,
                    error_type=e.error_type,
                    error=e.message,
                )

        logger.info("verifier_sweep_finished", scanned=len(stale), reconciled=reconciled)
        return reconciled

    async def _verify_one(self, attempt: Attempt, now: datetime) -> bool:
        polls = attempt.poll_count + 1
        try:
            status = await self._gateway.query_status(attempt.correlation_id)
        except GatewayUnavailable as e:
            review = None
            if polls >= self._settings.max_poll_attempts:
                review = f"gateway unavailable after {polls} polls"
            await self._record_poll(attempt, review)
            logger.warning(
                "verifier_gateway_unavailable",
                attempt_id=attempt.id,
                operation=e.operation,
                status_code=e.status_code,
                poll_count=polls,
            )
            return False

        if status.state == QueryState.RESOLVED:
            applied = await self._resolve(attempt, status)
            if applied is not None:
                return applied
            # a resolved answer without a result code is treated as still processing

        if status.state == QueryState.NOT_FOUND:
            age = (now - attempt.created_at).total_seconds() if attempt.created_at else 0
            if polls >= self._settings.not_found_max_polls or age >= self._settings.max_wait_seconds:
                return await self._fail_not_found(attempt, polls)
            await self._record_poll(attempt)
            logger.info("verifier_not_found", attempt_id=attempt.id, poll_count=polls)
            return False

        review = None
        if polls >= self._settings.max_poll_attempts:
            review = f"still processing after {polls} polls"
        await self._record_poll(attempt, review)
        logger.info("verifier_still_processing", attempt_id=attempt.id, poll_count=polls)
        return False

    async def _record_poll(self, attempt: Attempt, review_reason: Optional[str] = None) -> None:
        async with self._uow_factory() as uow:
            await uow.store.record_poll(attempt.id, review_reason=review_reason)

    async def _resolve(self, attempt: Attempt, status: StatusQueryResult) -> Optional[bool]:
        outcome = resolve_outcome(status.result_code, status.result_desc)
        async with self._uow_factory() as uow:
            result = await PaymentDomainService(uow.store).apply_outcome(
                attempt, outcome, source=ResolutionSource.VERIFIER
            )
            if result is None:
                return None
            await uow.store.record_poll(attempt.id)

        if result.applied:
            logger.info(
                "attempt_result_applied",
                attempt_id=attempt.id,
                payment_id=attempt.payment_id,
                result_code=result.attempt.result_code,
                payment_status=result.payment.status.value,
                source=ResolutionSource.VERIFIER.value,
            )
        else:
            logger.info(
                "verifier_already_resolved",
                attempt_id=attempt.id,
                result_code=result.attempt.result_code,
                resolved_by=getattr(result.attempt.resolved_by, "value", None),
            )
        return result.applied

    async def _fail_not_found(self, attempt: Attempt, polls: int) -> bool:
        outcome = Failed(
            result_code=RECONCILIATION_NOT_FOUND_CODE,
            result_desc=f"Transaction not found at gateway after {polls} polls",
        )
        async with self._uow_factory() as uow:
            await uow.store.record_poll(attempt.id)
            result = await PaymentDomainService(uow.store).apply_outcome(
                attempt, outcome, source=ResolutionSource.VERIFIER
            )
        if result is not None and result.applied:
            logger.warning(
                "attempt_marked_not_found",
                attempt_id=attempt.id,
                payment_id=attempt.payment_id,
                poll_count=polls,
            )
            return True
        return False
