"""
Mobile-money gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters
(the Daraja client in production, an in-memory fake in tests).
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import AccessToken, PushResult, StatusQueryResult


@runtime_checkable
class MobileMoneyGateway(Protocol):
    """Gateway protocol for STK-push style providers.

    Contract:
    - bad caller input raises ValidationError before any network call
    - an unreachable gateway (timeout, transport, non-2xx, malformed body)
      raises GatewayUnavailable
    - a business rejection from a reachable gateway is returned, not raised
    """

    provider: str

    async def authenticate(self) -> AccessToken: ...

    async def initiate_push(
        self,
        phone: str,
        amount: Decimal,
        reference: str,
        description: Optional[str] = None,
    ) -> PushResult: ...

    async def query_status(self, correlation_id: str) -> StatusQueryResult: ...

    async def aclose(self) -> None: ...
