"""
Map httpx failures and unusable gateway responses to GatewayUnavailable.
"""
from __future__ import annotations

from typing import Optional

import httpx

from domain.common.exceptions import GatewayUnavailable


def from_transport_error(exc: Exception, *, operation: str) -> GatewayUnavailable:
    if isinstance(exc, httpx.TimeoutException):
        return GatewayUnavailable(
            f"Gateway timed out during {operation}",
            operation=operation,
            details={"reason": "timeout", "error": type(exc).__name__},
        )
    return GatewayUnavailable(
        f"Gateway unreachable during {operation}",
        operation=operation,
        details={"reason": "transport", "error": type(exc).__name__},
    )


def from_response(
    response: httpx.Response,
    *,
    operation: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> GatewayUnavailable:
    return GatewayUnavailable(
        f"Gateway returned HTTP {response.status_code} during {operation}",
        operation=operation,
        status_code=response.status_code,
        details={"reason": "http_status", "error_code": error_code, "error_message": error_message},
    )


def malformed(operation: str, reason: str, status_code: Optional[int] = None) -> GatewayUnavailable:
    return GatewayUnavailable(
        f"Malformed gateway response during {operation}: {reason}",
        operation=operation,
        status_code=status_code,
        details={"reason": "malformed", "detail": reason},
    )
