"""
支付领域服务 - 回调与主动查询共用的状态转换
"""
from typing import Optional

from .entity import (
    Attempt,
    AttemptOutcome,
    Completed,
    Failed,
    Pending,
    ResolutionSource,
)
from .repository import MarkResult, TransactionStore
from shared.codes.payment_codes import SUCCESS_RESULT_CODE


def resolve_outcome(
    result_code: Optional[object],
    result_desc: Optional[str] = None,
    receipt_number: Optional[str] = None,
) -> AttemptOutcome:
    """把网关的 ResultCode 归一为 Pending | Completed | Failed"""
    if result_code is None or str(result_code).strip() == "":
        return Pending(reason=result_desc)
    code = str(result_code).strip()
    if code == SUCCESS_RESULT_CODE:
        return Completed(result_code=code, result_desc=result_desc, receipt_number=receipt_number)
    return Failed(result_code=code, result_desc=result_desc)


class PaymentDomainService:
    """
    支付领域服务

    职责：
    1. 把 Callback Processor 与 Verifier 得到的结论映射为同一次守卫更新
    2. 已终态的 Attempt 再次收到结论时不产生第二次副作用
    """

    def __init__(self, store: TransactionStore):
        self.store = store

    async def apply_outcome(
        self,
        attempt: Attempt,
        outcome: AttemptOutcome,
        *,
        source: ResolutionSource,
        transaction_time: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[MarkResult]:
        """
        应用结论；Pending 不写库并返回 None

        先到者生效，后到者得到 applied=False。
        """
        if isinstance(outcome, Pending):
            return None

        if isinstance(outcome, Completed):
            result = await self.store.mark_attempt_result(
                attempt.id,
                outcome.result_code,
                outcome.result_desc,
                outcome.receipt_number,
                source=source,
                transaction_time=transaction_time,
                metadata=metadata,
            )
        elif isinstance(outcome, Failed):
            result = await self.store.mark_attempt_result(
                attempt.id,
                outcome.result_code,
                outcome.result_desc,
                source=source,
                transaction_time=transaction_time,
                metadata=metadata,
            )
        else:  # pragma: no cover
            raise TypeError(f"Unknown attempt outcome: {outcome!r}")

        return result
