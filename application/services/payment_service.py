"""
Application service orchestrating payment use-cases.

This class is the collaborator boundary other subsystems call:
initiate / handle_notification / verify_pending / retry, plus read-only
helpers used by the API. It depends only on the MobileMoneyGateway port,
the unit of work abstraction and DTOs; implementations are injected from
the composition root (API/tasks), keeping dependencies one-way.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Optional

from application.dtos.payments import (
    AttemptView,
    CallbackRecordView,
    ConfigurationIssueView,
    ConfigurationStatus,
    ConnectionTestResult,
    PaymentView,
    PhoneValidationResult,
    ResultCodeView,
)
from application.ports.payment_gateway import MobileMoneyGateway
from application.services.callback_processor import CallbackProcessor
from application.services.retry_orchestrator import RetryOrchestrator
from application.services.verifier import Verifier
from core.logging_config import get_logger
from core.settings import MpesaSettings
from domain.common.exceptions import GatewayUnavailable, NotFound
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Failed, ResolutionSource
from domain.payment.phone import MSISDN_PATTERN, normalize_phone
from domain.payment.service import PaymentDomainService
from shared.codes.payment_codes import RESULT_CODE_DESCRIPTIONS


logger = get_logger(__name__)


class PaymentService:
    def __init__(
        self,
        gateway: MobileMoneyGateway,
        uow_factory: Callable[..., AbstractUnitOfWork],
        settings: MpesaSettings,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self._uow_factory = uow_factory
        self.callbacks = CallbackProcessor(uow_factory, settings.webhook)
        self.verifier = Verifier(gateway, uow_factory, settings.verifier)
        self.retries = RetryOrchestrator(gateway, uow_factory)

    async def initiate(
        self,
        amount: Decimal,
        phone: str,
        reference: str,
        description: Optional[str] = None,
    ) -> AttemptView:
        """Push a payment prompt to the payer and record Payment + Attempt #1."""
        logger.info("payment_initiate_request", reference=reference, amount=str(amount))
        # validates input before any network call; nothing is stored on failure
        push = await self.gateway.initiate_push(phone, amount, reference, description)

        async with self._uow_factory() as uow:
            payment = await uow.store.create_payment(
                push.amount,
                self.settings.currency,
                reference.strip(),
                push.phone,
                description,
            )
            attempt = await uow.store.create_attempt(
                payment.id,
                correlation_id=push.correlation_id,
                counterparty_id=push.counterparty_id,
                phone=push.phone,
                amount=push.amount,
            )
            if not push.accepted:
                result = await PaymentDomainService(uow.store).apply_outcome(
                    attempt,
                    Failed(result_code=push.result_code, result_desc=push.result_desc),
                    source=ResolutionSource.PUSH,
                )
                attempt, payment = result.attempt, result.payment

        logger.info(
            "payment_initiate_response",
            payment_id=payment.id,
            attempt_id=attempt.id,
            accepted=push.accepted,
            result_code=push.result_code,
            correlation_id=push.correlation_id,
        )
        return AttemptView.build(payment, attempt, push)

    async def handle_notification(self, payload: Any) -> None:
        await self.callbacks.handle_notification(payload)

    async def verify_pending(self) -> int:
        return await self.verifier.verify_pending()

    async def retry(self, payment_id: int) -> AttemptView:
        return await self.retries.retry(payment_id)

    async def reprocess_callbacks(self) -> int:
        return await self.callbacks.reprocess_pending(self.settings.webhook.reprocess_batch_size)

    async def get_payment(self, payment_id: int) -> PaymentView:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.store.get_payment(payment_id)
            if payment is None:
                raise NotFound("Payment", payment_id)
            attempts = await uow.store.list_attempts(payment_id)
        return PaymentView.build(payment, attempts)

    async def list_unprocessed_callbacks(self, limit: int = 100) -> list[CallbackRecordView]:
        async with self._uow_factory(readonly=True) as uow:
            records = await uow.store.list_unprocessed_callbacks(limit)
        return [CallbackRecordView.model_validate(r) for r in records]

    def validate_phone(self, phone: str) -> PhoneValidationResult:
        normalized = normalize_phone(phone)
        valid = bool(MSISDN_PATTERN.match(normalized))
        return PhoneValidationResult(
            phone=phone,
            normalized=normalized,
            valid=valid,
            message=None if valid else "Use Kenyan format (e.g., 254712345678)",
        )

    def configuration_status(self) -> ConfigurationStatus:
        issues = self.settings.validate_configuration()
        return ConfigurationStatus(
            is_configured=not issues,
            environment=self.settings.environment,
            base_url=self.settings.resolved_base_url,
            shortcode=self.settings.masked_shortcode,
            callback_url=self.settings.callback_url,
            issues=[ConfigurationIssueView.model_validate(i) for i in issues],
        )

    async def test_connection(self) -> ConnectionTestResult:
        """Fetch an access token to prove credentials and connectivity.

        On failure the GatewayUnavailable carries the configuration issues
        found, so an operator sees both in one response.
        """
        try:
            token = await self.gateway.authenticate()
        except GatewayUnavailable as e:
            issues = self.settings.validate_configuration()
            e.details["configuration_issues"] = [
                ConfigurationIssueView.model_validate(i).model_dump() for i in issues
            ]
            logger.warning(
                "mpesa_connection_test_failed",
                status_code=e.status_code,
                issues=[i.field for i in issues],
            )
            raise
        logger.info("mpesa_connection_test_passed", environment=self.settings.environment)
        return ConnectionTestResult(
            connected=True,
            environment=self.settings.environment,
            base_url=self.settings.resolved_base_url,
            token_expires_at=token.expires_at,
        )

    @staticmethod
    def result_codes() -> list[ResultCodeView]:
        return [ResultCodeView(code=c, description=d) for c, d in RESULT_CODE_DESCRIPTIONS.items()]

    async def aclose(self) -> None:
        await self.gateway.aclose()
