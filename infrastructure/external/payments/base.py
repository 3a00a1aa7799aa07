"""
Base gateway client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement provider-specific signing and
response parsing.
"""
from __future__ import annotations

from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import MpesaRetry, MpesaTimeouts
from infrastructure.external.payments.exceptions import from_transport_error


logger = get_logger(__name__)

RETRYABLE_ERRORS = (httpx.TimeoutException, httpx.TransportError)
# the request never reached the gateway
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class BaseGatewayClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[MpesaTimeouts] = None,
        retry: Optional[MpesaRetry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or MpesaTimeouts()
        self._retry_cfg = retry or MpesaRetry()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg.connect,
            read=self._timeouts_cfg.read,
            write=self._timeouts_cfg.write,
            timeout=self._timeouts_cfg.total,
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any], retry_on: tuple = RETRYABLE_ERRORS):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg.max) + 1),
            wait=wait_exponential(
                multiplier=self._retry_cfg.base_backoff,
                min=0,
                max=self._retry_cfg.max_backoff,
            ),
            retry=retry_if_exception_type(retry_on),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        idempotent: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request with transport retries; failures become GatewayUnavailable.

        Non-idempotent requests are only retried when the request never left
        this process (connection or pool errors). A read timeout may mean the
        gateway already acted on it.
        """

        async def _do() -> httpx.Response:
            async with self.client() as c:
                return await c.request(method, url, **kwargs)

        retry_on = RETRYABLE_ERRORS if idempotent else NOT_SENT_ERRORS
        try:
            return await self._retry(_do, retry_on)
        except RETRYABLE_ERRORS as e:
            logger.warning(
                "gateway_transport_error",
                provider=self.provider,
                operation=operation,
                error=type(e).__name__,
                idempotent=idempotent,
            )
            raise from_transport_error(e, operation=operation) from e

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
