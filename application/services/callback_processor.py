"""
Callback processor - applies inbound M-Pesa notifications to their attempt.

Every payload is stored before anything else happens, in its own
transaction. The transition and the "processed" flag are then written
together in a second transaction, so a crash in between leaves an
unprocessed record that reprocess_pending() picks up later.

Orphans (no attempt with that correlation id yet) are replayed with a
doubling backoff and abandoned after WebhookSettings.orphan_max_replays.
Malformed payloads are stored abandoned straight away.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError as PayloadValidationError

from application.dtos.payments import CallbackBody, NotificationPayload
from core.logging_config import get_logger
from core.settings import WebhookSettings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import CallbackRecord, ResolutionSource
from domain.payment.service import PaymentDomainService, resolve_outcome


logger = get_logger(__name__)

ORPHAN_NOTE = "orphan"
ABANDONED_ORPHAN_NOTE = "orphan: replays exhausted"
DUPLICATE_NOTE = "duplicate"


class CallbackProcessor:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        settings: Optional[WebhookSettings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._settings = settings or WebhookSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def handle_notification(self, payload: Any) -> None:
        """Process one notification. Never raises: the gateway must always get its ack."""
        try:
            await self._handle(payload)
        except Exception:
            logger.exception("callback_handling_failed")

    async def _handle(self, payload: Any) -> None:
        raw = payload if isinstance(payload, dict) else {"raw": payload}
        try:
            notification = NotificationPayload.model_validate(payload)
        except PayloadValidationError as e:
            async with self._uow_factory() as uow:
                record = await uow.store.record_callback(
                    raw,
                    notes=f"malformed: {e.error_count()} validation error(s)",
                    abandoned=True,
                )
            logger.error(
                "callback_malformed",
                callback_id=record.id,
                errors=[".".join(str(p) for p in err["loc"]) for err in e.errors()],
            )
            return

        cb = notification.callback
        async with self._uow_factory() as uow:
            record = await uow.store.record_callback(raw, correlation_id=cb.correlation_id)
        logger.info(
            "callback_received",
            callback_id=record.id,
            correlation_id=cb.correlation_id,
            result_code=cb.result_code,
        )
        await self._apply(record, cb, replay=False)

    async def _apply(self, record: CallbackRecord, cb: CallbackBody, *, replay: bool) -> bool:
        """Apply a stored callback. Returns False when it is (still) an orphan."""
        async with self._uow_factory() as uow:
            attempt = await uow.store.find_attempt_by_correlation_id(cb.correlation_id)
            if attempt is None:
                await self._defer_orphan(uow, record, cb, replay=replay)
                return False

            meta = cb.parsed_metadata()
            outcome = resolve_outcome(cb.result_code, cb.result_desc, meta.receipt_number)
            result = await PaymentDomainService(uow.store).apply_outcome(
                attempt,
                outcome,
                source=ResolutionSource.CALLBACK,
                transaction_time=meta.transaction_time,
                metadata=meta.raw or None,
            )

            note: Optional[str] = None
            if result.applied:
                logger.info(
                    "attempt_result_applied",
                    attempt_id=attempt.id,
                    payment_id=attempt.payment_id,
                    result_code=result.attempt.result_code,
                    payment_status=result.payment.status.value,
                    source=ResolutionSource.CALLBACK.value,
                )
                if meta.amount is not None and meta.amount != attempt.amount:
                    logger.warning(
                        "callback_amount_mismatch",
                        attempt_id=attempt.id,
                        expected=str(attempt.amount),
                        received=str(meta.amount),
                    )
            else:
                note = DUPLICATE_NOTE
                logger.info(
                    "callback_duplicate",
                    attempt_id=attempt.id,
                    correlation_id=cb.correlation_id,
                    existing_result_code=result.attempt.result_code,
                    received_result_code=cb.result_code,
                )

            await uow.store.mark_callback_processed(record.id, attempt_id=attempt.id, notes=note)
            return True

    async def _defer_orphan(
        self,
        uow: AbstractUnitOfWork,
        record: CallbackRecord,
        cb: CallbackBody,
        *,
        replay: bool,
    ) -> None:
        if not replay:
            # first sighting: due for replay straight away
            await uow.store.annotate_callback(record.id, ORPHAN_NOTE, correlation_id=cb.correlation_id)
            logger.error(
                "callback_orphaned",
                callback_id=record.id,
                correlation_id=cb.correlation_id,
                counterparty_id=cb.counterparty_id,
                result_code=cb.result_code,
            )
            return

        replays = record.replay_count + 1
        if replays >= self._settings.orphan_max_replays:
            await uow.store.annotate_callback(
                record.id,
                ABANDONED_ORPHAN_NOTE,
                replay_count=replays,
                abandoned=True,
            )
            logger.error(
                "callback_orphan_abandoned",
                callback_id=record.id,
                correlation_id=cb.correlation_id,
                replay_count=replays,
            )
            return

        next_replay_at = self._clock() + timedelta(seconds=self._settings.orphan_replay_delay(replays))
        await uow.store.annotate_callback(
            record.id,
            ORPHAN_NOTE,
            replay_count=replays,
            next_replay_at=next_replay_at,
        )
        logger.warning(
            "callback_still_orphaned",
            callback_id=record.id,
            correlation_id=cb.correlation_id,
            replay_count=replays,
            next_replay_at=next_replay_at.isoformat(),
        )

    async def reprocess_pending(self, limit: int = 100) -> int:
        """Replay stored callbacks that are due and not abandoned."""
        async with self._uow_factory(readonly=True) as uow:
            records = await uow.store.list_replayable_callbacks(self._clock(), limit)

        processed = 0
        for record in records:
            try:
                notification = NotificationPayload.model_validate(record.payload)
            except PayloadValidationError:
                async with self._uow_factory() as uow:
                    await uow.store.annotate_callback(record.id, "malformed", abandoned=True)
                continue
            try:
                if await self._apply(record, notification.callback, replay=True):
                    processed += 1
            except Exception:
                logger.exception("callback_reprocess_failed", callback_id=record.id)

        logger.info("callback_reprocess_finished", scanned=len(records), processed=processed)
        return processed
