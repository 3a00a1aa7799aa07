"""
Safaricom Daraja (M-Pesa Express / STK push) client.

Endpoints used:
- GET|POST /oauth/v1/generate?grant_type=client_credentials  (Basic auth)
- POST     /mpesa/stkpush/v1/processrequest
- POST     /mpesa/stkpushquery/v1/query

Push and query payloads are signed with
base64(shortcode + passkey + timestamp), timestamp in EAT (UTC+3).
"""
from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import httpx

from application.dtos.payments import AccessToken, PushResult, QueryState, StatusQueryResult
from core.settings import MpesaSettings
from domain.common.exceptions import GatewayUnavailable, ValidationError
from domain.payment.phone import validate_phone
from infrastructure.external.payments.base import BaseGatewayClient
from infrastructure.external.payments.exceptions import from_response, malformed
from shared.codes.payment_codes import (
    QUERY_NOT_FOUND_ERROR_CODES,
    QUERY_PROCESSING_ERROR_CODES,
)


TOKEN_PATH = "/oauth/v1/generate"
PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
QUERY_PATH = "/mpesa/stkpushquery/v1/query"

EAT = timezone(timedelta(hours=3), name="EAT")
MAX_REFERENCE_LENGTH = 12
MAX_DESCRIPTION_LENGTH = 13


def validate_amount(amount: Any, min_amount: int = 1, max_amount: int = 70000) -> int:
    """Return the amount as whole shillings; Daraja only accepts integers."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number", field="amount")
    if not value.is_finite():
        raise ValidationError("Amount must be a number", field="amount")
    if value < min_amount or value > max_amount:
        raise ValidationError(
            f"Amount must be between {min_amount} and {max_amount:,} KES",
            field="amount",
            details={"min": min_amount, "max": max_amount},
        )
    if value != value.to_integral_value():
        raise ValidationError("Amount must be a whole number of KES", field="amount")
    return int(value)


def validate_reference(reference: Any) -> str:
    ref = str(reference or "").strip()
    if not ref or len(ref) > MAX_REFERENCE_LENGTH:
        raise ValidationError(
            f"Reference must be 1 to {MAX_REFERENCE_LENGTH} characters",
            field="reference",
        )
    return ref


def build_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


class DarajaClient(BaseGatewayClient):
    provider = "mpesa"

    def __init__(
        self,
        settings: MpesaSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(timeouts=settings.timeouts, retry=settings.retry, transport=transport)
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._token: Optional[AccessToken] = None
        self._token_lock = asyncio.Lock()

    def _url(self, path: str) -> str:
        return f"{self.settings.resolved_base_url}{path}"

    def _require(self, *names: str, operation: str) -> None:
        missing = [n for n in names if not getattr(self.settings, n)]
        if missing:
            raise GatewayUnavailable(
                f"M-Pesa is not configured: missing {', '.join(missing)}",
                operation=operation,
                details={"reason": "configuration", "missing": missing},
            )

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict:
        try:
            data = response.json()
        except ValueError:
            raise malformed(operation, "body is not JSON", response.status_code)
        if not isinstance(data, dict):
            raise malformed(operation, "body is not an object", response.status_code)
        return data

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def authenticate(self) -> AccessToken:
        operation = "authenticate"
        if self.settings.token_cache_enabled and self._token is not None:
            if self._token.is_valid(self.settings.token_expiry_margin_seconds, now=self._clock()):
                return self._token

        async with self._token_lock:
            # another coroutine may have refreshed while we waited
            if self.settings.token_cache_enabled and self._token is not None:
                if self._token.is_valid(self.settings.token_expiry_margin_seconds, now=self._clock()):
                    return self._token

            self._require("consumer_key", "consumer_secret", operation=operation)
            response = await self._send(
                operation,
                self.settings.token_http_method,
                self._url(TOKEN_PATH),
                params={"grant_type": "client_credentials"},
                auth=(self.settings.consumer_key, self.settings.consumer_secret),
            )
            if not response.is_success:
                self._log("mpesa_auth_failed", status_code=response.status_code)
                raise from_response(response, operation=operation)

            data = self._json(response, operation)
            value = data.get("access_token")
            if not value:
                raise malformed(operation, "access_token missing", response.status_code)
            try:
                expires_in = int(data.get("expires_in", 3599))
            except (TypeError, ValueError):
                raise malformed(operation, "expires_in is not an integer", response.status_code)

            token = AccessToken(value=value, expires_at=self._clock() + timedelta(seconds=expires_in))
            if self.settings.token_cache_enabled:
                self._token = token
            self._log("mpesa_token_issued", expires_in=expires_in)
            return token

    def invalidate_token(self) -> None:
        self._token = None

    # ------------------------------------------------------------------
    # STK push
    # ------------------------------------------------------------------

    def _signed_fields(self) -> dict[str, str]:
        timestamp = build_timestamp(self._clock())
        return {
            "BusinessShortCode": self.settings.shortcode,
            "Password": build_password(self.settings.shortcode, self.settings.passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def _post_signed(
        self,
        operation: str,
        path: str,
        body: dict,
        *,
        idempotent: bool = True,
    ) -> httpx.Response:
        token = await self.authenticate()
        response = await self._send(
            operation,
            "POST",
            self._url(path),
            json=body,
            headers={"Authorization": f"Bearer {token.value}"},
            idempotent=idempotent,
        )
        if response.status_code == 401:
            # token revoked or expired early; next call fetches a fresh one
            self.invalidate_token()
        return response

    async def initiate_push(
        self,
        phone: str,
        amount: Decimal,
        reference: str,
        description: Optional[str] = None,
    ) -> PushResult:
        operation = "initiate_push"
        msisdn = validate_phone(phone)
        whole_amount = validate_amount(amount, self.settings.min_amount, self.settings.max_amount)
        ref = validate_reference(reference)
        desc = (description or self.settings.default_description).strip()[:MAX_DESCRIPTION_LENGTH]
        self._require("shortcode", "passkey", "callback_url", operation=operation)

        body = {
            **self._signed_fields(),
            "TransactionType": self.settings.transaction_type,
            "Amount": whole_amount,
            "PartyA": msisdn,
            "PartyB": self.settings.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.settings.callback_url,
            "AccountReference": ref,
            "TransactionDesc": desc or ref,
        }
        # a push re-sent after a read timeout could prompt the payer twice
        response = await self._post_signed(operation, PUSH_PATH, body, idempotent=False)
        if not response.is_success:
            error_code, error_message = self._error_fields(response)
            self._log(
                "mpesa_push_http_error",
                status_code=response.status_code,
                error_code=error_code,
                reference=ref,
            )
            raise from_response(response, operation=operation, error_code=error_code, error_message=error_message)

        data = self._json(response, operation)
        result_code = data.get("ResponseCode", data.get("ResultCode"))
        if result_code is None or str(result_code).strip() == "":
            raise malformed(operation, "ResponseCode missing", response.status_code)

        result = PushResult(
            correlation_id=data.get("CheckoutRequestID") or None,
            counterparty_id=data.get("MerchantRequestID") or None,
            result_code=result_code,
            result_desc=data.get("ResponseDescription") or data.get("ResultDesc"),
            customer_message=data.get("CustomerMessage"),
            phone=msisdn,
            amount=Decimal(whole_amount),
        )
        if result.accepted and not result.correlation_id:
            raise malformed(operation, "CheckoutRequestID missing on accepted push", response.status_code)
        if not result.accepted:
            # a rejected push never produces a callback, so there is nothing to correlate
            result.correlation_id = None

        self._log(
            "mpesa_push_sent",
            reference=ref,
            accepted=result.accepted,
            result_code=result.result_code,
            correlation_id=result.correlation_id,
        )
        return result

    # ------------------------------------------------------------------
    # Status query
    # ------------------------------------------------------------------

    @staticmethod
    def _error_fields(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
        try:
            data = response.json()
        except ValueError:
            return None, None
        if not isinstance(data, dict):
            return None, None
        code = data.get("errorCode")
        return (str(code) if code is not None else None), data.get("errorMessage")

    async def query_status(self, correlation_id: str) -> StatusQueryResult:
        operation = "query_status"
        if not correlation_id or not str(correlation_id).strip():
            raise ValidationError("Correlation id is required", field="correlation_id")
        self._require("shortcode", "passkey", operation=operation)

        body = {**self._signed_fields(), "CheckoutRequestID": correlation_id}
        response = await self._post_signed(operation, QUERY_PATH, body)

        if not response.is_success:
            error_code, error_message = self._error_fields(response)
            if error_code in QUERY_PROCESSING_ERROR_CODES:
                return StatusQueryResult(
                    state=QueryState.PROCESSING,
                    correlation_id=correlation_id,
                    result_desc=error_message,
                    error_code=error_code,
                )
            if error_code in QUERY_NOT_FOUND_ERROR_CODES:
                return StatusQueryResult(
                    state=QueryState.NOT_FOUND,
                    correlation_id=correlation_id,
                    result_desc=error_message,
                    error_code=error_code,
                )
            self._log("mpesa_query_http_error", status_code=response.status_code, error_code=error_code)
            raise from_response(response, operation=operation, error_code=error_code, error_message=error_message)

        data = self._json(response, operation)
        result_code = data.get("ResultCode")
        if result_code is None or str(result_code).strip() == "":
            error_code = data.get("errorCode")
            if error_code is not None and str(error_code) in QUERY_PROCESSING_ERROR_CODES:
                return StatusQueryResult(
                    state=QueryState.PROCESSING,
                    correlation_id=correlation_id,
                    result_desc=data.get("errorMessage"),
                    error_code=str(error_code),
                )
            raise malformed(operation, "ResultCode missing", response.status_code)

        return StatusQueryResult(
            state=QueryState.RESOLVED,
            correlation_id=correlation_id,
            result_code=result_code,
            result_desc=data.get("ResultDesc"),
        )
