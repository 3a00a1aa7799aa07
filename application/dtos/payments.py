"""
Payment DTOs (Pydantic v2) used at application boundaries.

Gateway results (AccessToken, PushResult, StatusQueryResult), the inbound
notification payload, and the views returned to API callers.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from shared.codes.payment_codes import SUCCESS_RESULT_CODE


def _code_to_str(v: Any) -> Any:
    # Daraja sends ResultCode as int in callbacks and as str in query responses
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float, Decimal)):
        return str(int(v))
    if isinstance(v, str):
        return v.strip()
    return v


ResultCode = Annotated[str, BeforeValidator(_code_to_str)]


# ---------------------------------------------------------------------------
# Gateway results
# ---------------------------------------------------------------------------


class AccessToken(BaseModel):
    value: str
    expires_at: datetime

    def is_valid(self, margin_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() > margin_seconds


class BusinessRejection(BaseModel):
    """A non-success business code returned by a reachable gateway. Not an error."""

    result_code: ResultCode
    result_desc: Optional[str] = None
    customer_message: Optional[str] = None


class PushResult(BaseModel):
    correlation_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    result_code: ResultCode
    result_desc: Optional[str] = None
    customer_message: Optional[str] = None
    # normalized MSISDN the push was sent to
    phone: str
    amount: Decimal

    @property
    def accepted(self) -> bool:
        return self.result_code == SUCCESS_RESULT_CODE

    @property
    def rejection(self) -> Optional[BusinessRejection]:
        if self.accepted:
            return None
        return BusinessRejection(
            result_code=self.result_code,
            result_desc=self.result_desc,
            customer_message=self.customer_message,
        )


class QueryState(str, Enum):
    RESOLVED = "resolved"
    PROCESSING = "processing"
    NOT_FOUND = "not_found"


class StatusQueryResult(BaseModel):
    state: QueryState
    correlation_id: str
    result_code: Optional[ResultCode] = None
    result_desc: Optional[str] = None
    error_code: Optional[str] = None


# ---------------------------------------------------------------------------
# Inbound notification
# ---------------------------------------------------------------------------


class MetadataItem(BaseModel):
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("Name", "name"))
    value: Any = Field(default=None, validation_alias=AliasChoices("Value", "value"))


class ParsedMetadata(BaseModel):
    receipt_number: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_time: Optional[str] = None
    phone: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


_RECEIPT_NAMES = ("MpesaReceiptNumber", "ReceiptNumber")


class CallbackBody(BaseModel):
    correlation_id: str = Field(
        validation_alias=AliasChoices("CorrelationId", "CheckoutRequestID"), min_length=1
    )
    counterparty_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("CounterpartyId", "MerchantRequestID")
    )
    result_code: ResultCode = Field(validation_alias=AliasChoices("ResultCode", "resultCode"), min_length=1)
    result_desc: Optional[str] = Field(default=None, validation_alias=AliasChoices("ResultDesc", "resultDesc"))
    metadata: list[MetadataItem] = Field(
        default_factory=list, validation_alias=AliasChoices("Metadata", "CallbackMetadata")
    )

    @field_validator("metadata", mode="before")
    @classmethod
    def _unwrap_items(cls, v: Any) -> Any:
        # Daraja nests the list under CallbackMetadata.Item; failures omit it
        if v is None:
            return []
        if isinstance(v, dict):
            v = v.get("Item") or v.get("items") or []
        if isinstance(v, list):
            return [item for item in v if isinstance(item, dict)]
        return []

    def parsed_metadata(self) -> ParsedMetadata:
        parsed = ParsedMetadata()
        for item in self.metadata:
            if not item.name or item.value is None:
                continue
            parsed.raw[item.name] = item.value
            if item.name in _RECEIPT_NAMES:
                parsed.receipt_number = str(item.value)
            elif item.name == "Amount":
                try:
                    parsed.amount = Decimal(str(item.value))
                except InvalidOperation:
                    continue
            elif item.name == "TransactionDate":
                parsed.transaction_time = str(item.value)
            elif item.name == "PhoneNumber":
                parsed.phone = str(item.value)
        return parsed


class NotificationBody(BaseModel):
    callback: CallbackBody = Field(validation_alias=AliasChoices("Callback", "stkCallback"))


class NotificationPayload(BaseModel):
    body: NotificationBody = Field(validation_alias=AliasChoices("Body", "body"))

    @property
    def callback(self) -> CallbackBody:
        return self.body.callback


# ---------------------------------------------------------------------------
# API requests and views
# ---------------------------------------------------------------------------


class InitiatePaymentRequest(BaseModel):
    amount: Decimal
    phone: str
    reference: str
    description: Optional[str] = Field(default=None, max_length=255)


class PhoneValidationRequest(BaseModel):
    phone: str


class PhoneValidationResult(BaseModel):
    phone: str
    normalized: str
    valid: bool
    message: Optional[str] = None


class AttemptRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    correlation_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    phone: str
    amount: Decimal
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    transaction_time: Optional[str] = None
    resolved_by: Optional[str] = None
    is_callback_received: bool = False
    poll_count: int = 0
    needs_review: bool = False
    review_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("resolved_by", mode="before")
    @classmethod
    def _enum_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class AttemptView(BaseModel):
    """Returned by initiate and retry."""

    payment_id: int
    attempt_id: int
    payment_status: str
    accepted: bool
    correlation_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    customer_message: Optional[str] = None
    rejection: Optional[BusinessRejection] = None
    created_at: Optional[datetime] = None

    @classmethod
    def build(cls, payment, attempt, push: Optional[PushResult] = None) -> "AttemptView":
        return cls(
            payment_id=payment.id,
            attempt_id=attempt.id,
            payment_status=getattr(payment.status, "value", payment.status),
            accepted=push.accepted if push is not None else attempt.result_code is None,
            correlation_id=attempt.correlation_id,
            counterparty_id=attempt.counterparty_id,
            result_code=attempt.result_code,
            result_desc=attempt.result_desc,
            customer_message=push.customer_message if push is not None else None,
            rejection=push.rejection if push is not None else None,
            created_at=attempt.created_at,
        )


class PaymentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    currency: str
    status: str
    reference: str
    payer_phone: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    attempts: list[AttemptRecord] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _enum_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)

    @classmethod
    def build(cls, payment, attempts) -> "PaymentView":
        view = cls.model_validate(payment)
        view.attempts = [AttemptRecord.model_validate(a) for a in attempts]
        return view


class CallbackRecordView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    attempt_id: Optional[int] = None
    correlation_id: Optional[str] = None
    processed: bool
    processing_notes: Optional[str] = None
    replay_count: int = 0
    next_replay_at: Optional[datetime] = None
    abandoned: bool = False
    payload: dict[str, Any]
    created_at: Optional[datetime] = None


class ConfigurationIssueView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field: str
    message: str


class ConfigurationStatus(BaseModel):
    is_configured: bool
    environment: str
    base_url: str
    shortcode: Optional[str] = None
    callback_url: Optional[str] = None
    issues: list[ConfigurationIssueView] = Field(default_factory=list)


class ConnectionTestResult(BaseModel):
    connected: bool
    environment: str
    base_url: str
    token_expires_at: Optional[datetime] = None


class ResultCodeView(BaseModel):
    code: str
    description: str
