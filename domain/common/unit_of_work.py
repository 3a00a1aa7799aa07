"""Unit of Work 抽象：一次业务操作对应一个事务"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import TransactionStore


class AbstractUnitOfWork(ABC):
    """
    事务边界

    正常退出时提交，异常退出时回滚；readonly=True 只读不提交。
    store 在进入上下文后可用。
    """

    store: TransactionStore

    def __init__(self, *, readonly: bool = False) -> None:
        self._readonly = readonly
        self._committed = False
        self.store = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            await self.rollback()
        elif not self._readonly and not self._committed:
            await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...
