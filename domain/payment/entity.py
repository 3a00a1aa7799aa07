"""
支付领域实体 - 支付聚合根、推送尝试（Attempt）与回调审计记录
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union
from enum import Enum

from domain.common.exceptions import ValidationError
from shared.codes.payment_codes import SUCCESS_RESULT_CODE


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"        # 等待网关结果
    COMPLETED = "completed"    # 支付成功
    FAILED = "failed"          # 支付失败（可重试）


class ResolutionSource(str, Enum):
    """Attempt 终态由谁写入"""
    CALLBACK = "callback"
    VERIFIER = "verifier"
    PUSH = "push"              # 推送请求被网关直接拒绝


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Payment:
    """
    支付聚合根

    业务规则：
    1. 金额必须大于0
    2. 同一时刻最多只有一个 pending 的 Attempt
    3. status 与最新 Attempt 的 result_code 保持一致：成功码 ⇔ completed
    """

    id: Optional[int]
    amount: Decimal
    currency: str
    status: PaymentStatus
    reference: str
    payer_phone: str
    description: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise ValidationError(f"支付金额必须大于0: {self.amount}", field="amount")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise ValidationError(f"无效的货币代码: {self.currency}", field="currency")
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.completed_at = _ensure_utc(self.completed_at)
        self.failed_at = _ensure_utc(self.failed_at)

    def is_final_status(self) -> bool:
        """检查是否为终态"""
        return self.status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)


@dataclass
class Attempt:
    """
    一次网关推送请求及其最终结果

    result_code 一旦写入即为终态，不可再修改；重试会创建新的 Attempt。
    """

    id: Optional[int]
    payment_id: int
    correlation_id: Optional[str]
    counterparty_id: Optional[str]
    phone: str
    amount: Decimal

    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    transaction_time: Optional[str] = None
    callback_metadata: dict = field(default_factory=dict)
    resolved_by: Optional[ResolutionSource] = None

    is_callback_received: bool = False
    callback_received_at: Optional[datetime] = None

    # 主动查询（Verifier）相关
    poll_count: int = 0
    last_polled_at: Optional[datetime] = None
    needs_review: bool = False
    review_reason: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.callback_received_at = _ensure_utc(self.callback_received_at)
        self.last_polled_at = _ensure_utc(self.last_polled_at)
        if self.callback_metadata is None:
            self.callback_metadata = {}

    @property
    def is_terminal(self) -> bool:
        return self.result_code is not None

    @property
    def is_successful(self) -> bool:
        return self.result_code == SUCCESS_RESULT_CODE

    @property
    def is_failed(self) -> bool:
        return self.is_terminal and not self.is_successful


@dataclass
class CallbackRecord:
    """回调审计记录（只追加）；attempt_id 为空表示孤儿回调"""

    id: Optional[int]
    payload: dict
    attempt_id: Optional[int] = None
    correlation_id: Optional[str] = None
    processed: bool = False
    processed_at: Optional[datetime] = None
    processing_notes: Optional[str] = None
    replay_count: int = 0
    next_replay_at: Optional[datetime] = None
    abandoned: bool = False
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.processed_at = _ensure_utc(self.processed_at)
        self.next_replay_at = _ensure_utc(self.next_replay_at)
        self.created_at = _ensure_utc(self.created_at)


# ---------------------------------------------------------------------------
# Attempt 结果的标签化变体：Pending | Completed | Failed
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Pending:
    """网关尚未给出结论"""
    reason: Optional[str] = None


@dataclass(frozen=True)
class Completed:
    result_code: str
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    result_code: str
    result_desc: Optional[str] = None


AttemptOutcome = Union[Pending, Completed, Failed]
