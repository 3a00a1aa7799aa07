"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 业务信息
    reference = Column(String(100), index=True, nullable=False, comment="账户参考号 AccountReference")
    payer_phone = Column(String(15), nullable=False, comment="付款人手机号（MSISDN）")
    description = Column(String(255), nullable=True, comment="交易描述")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=12, scale=2), nullable=False, comment="支付金额")
    currency = Column(String(3), nullable=False, default="KES", comment="货币代码 ISO-4217")

    # 状态
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/completed/failed"
    )

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")
    completed_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    failed_at = Column(DateTime(timezone=True), nullable=True, comment="支付失败时间")

    # 失败原因
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 关系
    attempts = relationship("AttemptModel", back_populates="payment", lazy="select")

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, reference='{self.reference}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class AttemptModel(Base):
    """
    推送尝试数据库模型

    一次 STK push 请求及其结果；result_code 非空即为终态
    """
    __tablename__ = "payment_attempts"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 关联支付
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )

    # 网关关联信息
    correlation_id = Column(String(100), unique=True, nullable=True, comment="CheckoutRequestID")
    counterparty_id = Column(String(100), nullable=True, comment="MerchantRequestID")

    phone = Column(String(15), nullable=False, comment="推送手机号")
    amount = Column(Numeric(precision=12, scale=2), nullable=False, comment="推送金额")

    # 结果
    result_code = Column(String(20), nullable=True, index=True, comment="网关结果码，非空即终态")
    result_desc = Column(Text, nullable=True, comment="网关结果描述")
    receipt_number = Column(String(50), nullable=True, index=True, comment="M-Pesa 收据号")
    transaction_time = Column(String(20), nullable=True, comment="网关交易时间 YYYYMMDDHHMMSS")
    resolved_by = Column(String(20), nullable=True, comment="终态来源: callback/verifier/push")

    # 回调信息
    callback_metadata = Column(JSON, nullable=True, comment="回调元数据")
    is_callback_received = Column(Boolean, nullable=False, default=False, comment="是否已收到回调")
    callback_received_at = Column(DateTime(timezone=True), nullable=True, comment="回调到达时间")

    # 主动查询
    poll_count = Column(Integer, nullable=False, default=0, comment="主动查询次数")
    last_polled_at = Column(DateTime(timezone=True), nullable=True, comment="最近一次查询时间")
    needs_review = Column(Boolean, nullable=False, default=False, index=True, comment="需要人工复核")
    review_reason = Column(Text, nullable=True, comment="复核原因")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")

    # 关系
    payment = relationship("PaymentModel", back_populates="attempts")

    # 索引
    __table_args__ = (
        Index("ix_payment_attempts_payment_created", "payment_id", "created_at"),
        Index("ix_payment_attempts_stale", "result_code", "is_callback_received", "needs_review", "created_at"),
    )

    def __repr__(self):
        return (
            f"<AttemptModel(id={self.id}, payment_id={self.payment_id}, "
            f"correlation_id='{self.correlation_id}', result_code={self.result_code!r})>"
        )


class CallbackRecordModel(Base):
    """
    回调审计记录

    先落库原始报文，再执行状态转换，最后标记已处理
    """
    __tablename__ = "payment_callbacks"

    id = Column(Integer, primary_key=True, index=True)

    attempt_id = Column(
        Integer,
        ForeignKey("payment_attempts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="关联的尝试ID，孤儿回调为空"
    )
    correlation_id = Column(String(100), nullable=True, index=True, comment="报文中的 CheckoutRequestID")
    payload = Column(JSON, nullable=False, comment="原始回调报文")

    processed = Column(Boolean, nullable=False, default=False, index=True, comment="是否已处理")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="处理时间")
    processing_notes = Column(Text, nullable=True, comment="处理备注")

    # 重放控制：孤儿按退避重放，超过上限或解析失败后不再重放
    replay_count = Column(Integer, nullable=False, default=0, comment="重放次数")
    next_replay_at = Column(DateTime(timezone=True), nullable=True, comment="下次可重放时间，为空表示立即可重放")
    abandoned = Column(Boolean, nullable=False, default=False, index=True, comment="不再自动重放")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="接收时间")

    def __repr__(self):
        return (
            f"<CallbackRecordModel(id={self.id}, attempt_id={self.attempt_id}, "
            f"processed={self.processed}, abandoned={self.abandoned})>"
        )
