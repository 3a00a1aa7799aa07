"""
交易存储接口 - 支付、推送尝试与回调记录的唯一事实来源
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from .entity import Payment, Attempt, CallbackRecord, ResolutionSource


@dataclass
class MarkResult:
    """mark_attempt_result 的返回值；applied=False 表示 Attempt 已是终态（幂等空操作）"""
    applied: bool
    attempt: Attempt
    payment: Payment


class TransactionStore(ABC):
    """交易存储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        payer_phone: str,
        description: Optional[str] = None,
    ) -> Payment:
        """创建 pending 状态的支付"""
        pass

    @abstractmethod
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
        """
        创建推送尝试

        业务规则：
        1. correlation_id 全局唯一
        2. 同一支付不能同时存在两个 pending 的 Attempt
        """
        pass

    @abstractmethod
    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_attempt(self, attempt_id: int) -> Optional[Attempt]:
        """根据ID获取尝试"""
        pass

    @abstractmethod
    async def find_attempt_by_correlation_id(self, correlation_id: str) -> Optional[Attempt]:
        """根据网关关联ID获取尝试"""
        pass

    @abstractmethod
    async def latest_attempt(self, payment_id: int) -> Optional[Attempt]:
        """获取支付的最新一次尝试（按创建时间）"""
        pass

    @abstractmethod
    async def list_attempts(self, payment_id: int) -> List[Attempt]:
        """按创建顺序列出支付的所有尝试"""
        pass

    @abstractmethod
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
        """
        原子、带条件的终态写入

        仅当 Attempt 尚未有 result_code 时更新 Attempt 并同步父支付状态；
        已是终态时返回 applied=False，不做任何修改。
        """
        pass

    @abstractmethod
    async def find_stale_attempts(
        self,
        older_than: datetime,
        polled_before: datetime,
        limit: int = 100,
    ) -> List[Attempt]:
        """查找超过宽限期仍未收到回调的 pending 尝试"""
        pass

    @abstractmethod
    async def record_poll(self, attempt_id: int, review_reason: Optional[str] = None) -> Attempt:
        """记录一次主动查询；review_reason 非空时标记为需要人工复核"""
        pass

    @abstractmethod
    async def reopen_payment(self, payment_id: int) -> bool:
        """失败的支付重新置为 pending（条件更新），返回是否成功"""
        pass

    @abstractmethod
    async def record_callback(
        self,
        payload: dict,
        *,
        correlation_id: Optional[str] = None,
        attempt_id: Optional[int] = None,
        notes: Optional[str] = None,
        abandoned: bool = False,
    ) -> CallbackRecord:
        """追加原始回调报文；abandoned=True 的记录只供人工排查，不会被重放"""
        pass

    @abstractmethod
    async def mark_callback_processed(
        self,
        callback_id: int,
        *,
        attempt_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> None:
        """标记回调已处理"""
        pass

    @abstractmethod
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
        """更新未处理回调的备注与重放进度（孤儿、解析失败等）"""
        pass

    @abstractmethod
    async def list_unprocessed_callbacks(self, limit: int = 100) -> List[CallbackRecord]:
        """列出尚未处理的回调，含已放弃重放的记录（供运维查看）"""
        pass

    @abstractmethod
    async def list_replayable_callbacks(self, due_before: datetime, limit: int = 100) -> List[CallbackRecord]:
        """
        列出可以重放的回调

        排除已放弃的记录和 next_replay_at 晚于 due_before 的记录，
        避免长期孤儿占满每一批。
        """
        pass
