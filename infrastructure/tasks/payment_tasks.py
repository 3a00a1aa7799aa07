"""
Celery tasks for payment reconciliation: verifier sweeps and callback replay.
"""
from __future__ import annotations

import asyncio

from celery import shared_task

from application.services.payment_service import PaymentService
from core.logging_config import get_logger
from core.settings import mpesa_settings
from infrastructure.database import engine
from infrastructure.external.payments import get_payment_gateway
from infrastructure.tasks.utils.base_task import BaseTask
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


async def _with_service(fn):
    service = PaymentService(
        gateway=get_payment_gateway(mpesa_settings),
        uow_factory=SQLAlchemyUnitOfWork,
        settings=mpesa_settings,
    )
    try:
        return await fn(service)
    finally:
        await service.aclose()
        # pooled connections are bound to this task's event loop
        await engine.dispose()


@shared_task(name="payments.verify_pending", bind=True, base=BaseTask, max_retries=3, default_retry_delay=30)
def task_verify_pending(self):
    try:
        reconciled = asyncio.run(_with_service(lambda s: s.verify_pending()))
    except Exception as exc:  # pragma: no cover
        logger.error("payment_verify_sweep_failed", error=str(exc))
        raise self.retry(exc=exc)
    logger.info("payment_verify_sweep_done", reconciled=reconciled)
    return {"reconciled": reconciled}


@shared_task(name="payments.reprocess_callbacks", bind=True, base=BaseTask, max_retries=3, default_retry_delay=30)
def task_reprocess_callbacks(self):
    try:
        processed = asyncio.run(_with_service(lambda s: s.reprocess_callbacks()))
    except Exception as exc:  # pragma: no cover
        logger.error("payment_callback_replay_failed", error=str(exc))
        raise self.retry(exc=exc)
    logger.info("payment_callback_replay_done", processed=processed)
    return {"processed": processed}
