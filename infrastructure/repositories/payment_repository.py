"""
交易存储实现 - 使用SQLAlchemy实现数据访问
"""
from typing import Optional, List
from decimal import Decimal
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError

from domain.common.exceptions import Conflict, NotFound
from domain.payment.entity import (
    Attempt,
    CallbackRecord,
    Payment,
    PaymentStatus,
    ResolutionSource,
)
from domain.payment.repository import MarkResult, TransactionStore
from infrastructure.models.payment import AttemptModel, CallbackRecordModel, PaymentModel
from shared.codes.payment_codes import SUCCESS_RESULT_CODE
from core.logging_config import get_logger


logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyTransactionStore(TransactionStore):
    """交易存储的SQLAlchemy实现

    所有终态写入都是带条件的 UPDATE，由数据库保证多实例并发下只生效一次。
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # 模型 <-> 实体
    # ------------------------------------------------------------------

    def _payment_to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=PaymentStatus(model.status),
            reference=model.reference,
            payer_phone=model.payer_phone,
            description=model.description,
            created_at=model.created_at,
            updated_at=model.updated_at,
            completed_at=model.completed_at,
            failed_at=model.failed_at,
            failure_reason=model.failure_reason,
        )

    def _attempt_to_entity(self, model: AttemptModel) -> Attempt:
        return Attempt(
            id=model.id,
            payment_id=model.payment_id,
            correlation_id=model.correlation_id,
            counterparty_id=model.counterparty_id,
            phone=model.phone,
            amount=Decimal(str(model.amount)),
            result_code=model.result_code,
            result_desc=model.result_desc,
            receipt_number=model.receipt_number,
            transaction_time=model.transaction_time,
            callback_metadata=model.callback_metadata or {},
            resolved_by=ResolutionSource(model.resolved_by) if model.resolved_by else None,
            is_callback_received=bool(model.is_callback_received),
            callback_received_at=model.callback_received_at,
            poll_count=model.poll_count or 0,
            last_polled_at=model.last_polled_at,
            needs_review=bool(model.needs_review),
            review_reason=model.review_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _callback_to_entity(self, model: CallbackRecordModel) -> CallbackRecord:
        return CallbackRecord(
            id=model.id,
            payload=model.payload or {},
            attempt_id=model.attempt_id,
            correlation_id=model.correlation_id,
            processed=bool(model.processed),
            processed_at=model.processed_at,
            processing_notes=model.processing_notes,
            replay_count=model.replay_count or 0,
            next_replay_at=model.next_replay_at,
            abandoned=bool(model.abandoned),
            created_at=model.created_at,
        )

    async def _load_payment(self, payment_id: int) -> Optional[PaymentModel]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_attempt(self, attempt_id: int) -> Optional[AttemptModel]:
        result = await self.session.execute(
            select(AttemptModel)
            .where(AttemptModel.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Payment / Attempt
    # ------------------------------------------------------------------

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        payer_phone: str,
        description: Optional[str] = None,
    ) -> Payment:
        """创建支付记录"""
        # 实体内部会进行验证
        payment = Payment(
            id=None,
            amount=amount,
            currency=currency.upper(),
            status=PaymentStatus.PENDING,
            reference=reference,
            payer_phone=payer_phone,
            description=description,
        )
        now = _utcnow()
        db_payment = PaymentModel(
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status.value,
            reference=payment.reference,
            payer_phone=payment.payer_phone,
            description=payment.description,
            created_at=now,
            updated_at=now,
        )
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            reference=db_payment.reference,
            amount=str(db_payment.amount),
        )
        return self._payment_to_entity(db_payment)

    async def create_attempt(
        self,
        payment_id: int,
        *,
        correlation_id: Optional[str],
        counterparty_id: Optional[str],
        phone: str,
        amount: Decimal,
        result_code: Optional[str] = None,
        result_desc: Optional[str] = None,
    ) -> Attempt:
        """创建推送尝试"""
        if await self._load_payment(payment_id) is None:
            raise NotFound("Payment", payment_id)

        # 业务规则：同一支付最多一个 pending 尝试
        pending = await self.session.execute(
            select(AttemptModel.id).where(
                AttemptModel.payment_id == payment_id,
                AttemptModel.result_code.is_(None),
            )
        )
        if pending.first() is not None:
            raise Conflict(
                f"Payment {payment_id} already has a pending attempt",
                details={"payment_id": payment_id},
            )

        if correlation_id is not None:
            existing = await self.session.execute(
                select(AttemptModel.id).where(AttemptModel.correlation_id == correlation_id)
            )
            if existing.first() is not None:
                raise Conflict(
                    f"Correlation id {correlation_id} already in use",
                    details={"correlation_id": correlation_id},
                )

        now = _utcnow()
        db_attempt = AttemptModel(
            payment_id=payment_id,
            correlation_id=correlation_id,
            counterparty_id=counterparty_id,
            phone=phone,
            amount=amount,
            result_code=result_code,
            result_desc=result_desc,
            resolved_by=ResolutionSource.PUSH.value if result_code is not None else None,
            is_callback_received=False,
            poll_count=0,
            needs_review=False,
            created_at=now,
            updated_at=now,
        )
        try:
            self.session.add(db_attempt)
            await self.session.flush()
        except IntegrityError as e:
            # 并发插入同一 correlation_id；由 UoW 负责回滚
            logger.warning(
                "attempt_create_conflict",
                payment_id=payment_id,
                correlation_id=correlation_id,
            )
            raise Conflict(
                f"Correlation id {correlation_id} already in use",
                details={"correlation_id": correlation_id},
            ) from e
        await self.session.refresh(db_attempt)
        logger.info(
            "attempt_created",
            attempt_id=db_attempt.id,
            payment_id=payment_id,
            correlation_id=correlation_id,
            result_code=result_code,
        )
        return self._attempt_to_entity(db_attempt)

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        db_payment = await self._load_payment(payment_id)
        return self._payment_to_entity(db_payment) if db_payment else None

    async def get_attempt(self, attempt_id: int) -> Optional[Attempt]:
        db_attempt = await self._load_attempt(attempt_id)
        return self._attempt_to_entity(db_attempt) if db_attempt else None

    async def find_attempt_by_correlation_id(self, correlation_id: str) -> Optional[Attempt]:
        """根据网关关联ID获取尝试"""
        result = await self.session.execute(
            select(AttemptModel)
            .where(AttemptModel.correlation_id == correlation_id)
            .execution_options(populate_existing=True)
        )
        db_attempt = result.scalar_one_or_none()
        return self._attempt_to_entity(db_attempt) if db_attempt else None

    async def latest_attempt(self, payment_id: int) -> Optional[Attempt]:
        result = await self.session.execute(
            select(AttemptModel)
            .where(AttemptModel.payment_id == payment_id)
            .order_by(AttemptModel.created_at.desc(), AttemptModel.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        db_attempt = result.scalar_one_or_none()
        return self._attempt_to_entity(db_attempt) if db_attempt else None

    async def list_attempts(self, payment_id: int) -> List[Attempt]:
        result = await self.session.execute(
            select(AttemptModel)
            .where(AttemptModel.payment_id == payment_id)
            .order_by(AttemptModel.created_at.asc(), AttemptModel.id.asc())
            .execution_options(populate_existing=True)
        )
        return [self._attempt_to_entity(a) for a in result.scalars().all()]

    async def mark_attempt_result(
        self,
        attempt_id: int,
        result_code: str,
        result_desc: Optional[str],
        receipt_number: Optional[str] = None,
        *,
        source: ResolutionSource,
        transaction_time: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> MarkResult:
        """守卫更新：仅当 result_code 为空时写入终态并同步父支付"""
        now = _utcnow()
        values = {
            "result_code": result_code,
            "result_desc": result_desc,
            "receipt_number": receipt_number,
            "transaction_time": transaction_time,
            "resolved_by": source.value,
            "updated_at": now,
        }
        if metadata is not None:
            values["callback_metadata"] = metadata
        if source == ResolutionSource.CALLBACK:
            values["is_callback_received"] = True
            values["callback_received_at"] = now

        result = await self.session.execute(
            update(AttemptModel)
            .where(AttemptModel.id == attempt_id, AttemptModel.result_code.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1

        db_attempt = await self._load_attempt(attempt_id)
        if db_attempt is None:
            raise NotFound("Attempt", attempt_id)

        if applied:
            succeeded = result_code == SUCCESS_RESULT_CODE
            payment_values = {"updated_at": now}
            if succeeded:
                payment_values.update(
                    status=PaymentStatus.COMPLETED.value,
                    completed_at=now,
                    failure_reason=None,
                )
            else:
                payment_values.update(
                    status=PaymentStatus.FAILED.value,
                    failed_at=now,
                    failure_reason=result_desc,
                )
            payment_result = await self.session.execute(
                update(PaymentModel)
                .where(
                    PaymentModel.id == db_attempt.payment_id,
                    PaymentModel.status == PaymentStatus.PENDING.value,
                )
                .values(**payment_values)
                .execution_options(synchronize_session=False)
            )
            if payment_result.rowcount != 1:
                logger.warning(
                    "payment_transition_skipped",
                    payment_id=db_attempt.payment_id,
                    attempt_id=attempt_id,
                    result_code=result_code,
                )

        db_payment = await self._load_payment(db_attempt.payment_id)
        return MarkResult(
            applied=applied,
            attempt=self._attempt_to_entity(db_attempt),
            payment=self._payment_to_entity(db_payment),
        )

    async def find_stale_attempts(
        self,
        older_than: datetime,
        polled_before: datetime,
        limit: int = 100,
    ) -> List[Attempt]:
        """查找超过宽限期仍未收到回调的 pending 尝试"""
        result = await self.session.execute(
            select(AttemptModel)
            .where(
                AttemptModel.result_code.is_(None),
                AttemptModel.is_callback_received.is_(False),
                AttemptModel.needs_review.is_(False),
                AttemptModel.correlation_id.is_not(None),
                AttemptModel.created_at <= older_than,
                or_(
                    AttemptModel.last_polled_at.is_(None),
                    AttemptModel.last_polled_at <= polled_before,
                ),
            )
            .order_by(AttemptModel.created_at.asc())
            .limit(limit)
        )
        return [self._attempt_to_entity(a) for a in result.scalars().all()]

    async def record_poll(self, attempt_id: int, review_reason: Optional[str] = None) -> Attempt:
        now = _utcnow()
        values = {
            "poll_count": AttemptModel.poll_count + 1,
            "last_polled_at": now,
            "updated_at": now,
        }
        if review_reason:
            values["needs_review"] = True
            values["review_reason"] = review_reason
        await self.session.execute(
            update(AttemptModel)
            .where(AttemptModel.id == attempt_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db_attempt = await self._load_attempt(attempt_id)
        if db_attempt is None:
            raise NotFound("Attempt", attempt_id)
        if review_reason:
            logger.warning(
                "attempt_flagged_for_review",
                attempt_id=attempt_id,
                payment_id=db_attempt.payment_id,
                reason=review_reason,
            )
        return self._attempt_to_entity(db_attempt)

    async def reopen_payment(self, payment_id: int) -> bool:
        """failed -> pending 的条件更新"""
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment_id,
                PaymentModel.status == PaymentStatus.FAILED.value,
            )
            .values(
                status=PaymentStatus.PENDING.value,
                failed_at=None,
                failure_reason=None,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        reopened = result.rowcount == 1
        if reopened:
            logger.info("payment_reopened", payment_id=payment_id)
        return reopened

    # ------------------------------------------------------------------
    # Callback 审计
    # ------------------------------------------------------------------

    async def record_callback(
        self,
        payload: dict,
        *,
        correlation_id: Optional[str] = None,
        attempt_id: Optional[int] = None,
        notes: Optional[str] = None,
        abandoned: bool = False,
    ) -> CallbackRecord:
        db_record = CallbackRecordModel(
            payload=payload,
            correlation_id=correlation_id,
            attempt_id=attempt_id,
            processed=False,
            processing_notes=notes,
            replay_count=0,
            abandoned=abandoned,
            created_at=_utcnow(),
        )
        self.session.add(db_record)
        await self.session.flush()
        await self.session.refresh(db_record)
        return self._callback_to_entity(db_record)

    async def mark_callback_processed(
        self,
        callback_id: int,
        *,
        attempt_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> None:
        values = {"processed": True, "processed_at": _utcnow(), "next_replay_at": None}
        if attempt_id is not None:
            values["attempt_id"] = attempt_id
        if notes is not None:
            values["processing_notes"] = notes
        await self.session.execute(
            update(CallbackRecordModel)
            .where(CallbackRecordModel.id == callback_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def annotate_callback(
        self,
        callback_id: int,
        notes: str,
        *,
        correlation_id: Optional[str] = None,
        replay_count: Optional[int] = None,
        next_replay_at: Optional[datetime] = None,
        abandoned: bool = False,
    ) -> None:
        values = {"processing_notes": notes, "next_replay_at": next_replay_at}
        if correlation_id is not None:
            values["correlation_id"] = correlation_id
        if replay_count is not None:
            values["replay_count"] = replay_count
        if abandoned:
            values["abandoned"] = True
        await self.session.execute(
            update(CallbackRecordModel)
            .where(CallbackRecordModel.id == callback_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def list_unprocessed_callbacks(self, limit: int = 100) -> List[CallbackRecord]:
        result = await self.session.execute(
            select(CallbackRecordModel)
            .where(CallbackRecordModel.processed.is_(False))
            .order_by(CallbackRecordModel.created_at.asc(), CallbackRecordModel.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [self._callback_to_entity(r) for r in result.scalars().all()]

    async def list_replayable_callbacks(self, due_before: datetime, limit: int = 100) -> List[CallbackRecord]:
        """未处理、未放弃且已到重放时间的回调，按接收顺序"""
        result = await self.session.execute(
            select(CallbackRecordModel)
            .where(
                CallbackRecordModel.processed.is_(False),
                CallbackRecordModel.abandoned.is_(False),
                or_(
                    CallbackRecordModel.next_replay_at.is_(None),
                    CallbackRecordModel.next_replay_at <= due_before,
                ),
            )
            .order_by(CallbackRecordModel.created_at.asc(), CallbackRecordModel.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [self._callback_to_entity(r) for r in result.scalars().all()]
