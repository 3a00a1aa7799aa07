"""Pytest bootstrap configuration.

Environment variables are set before any application module is imported,
because settings and the database engine are built at import time.
"""
import os

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DEBUG", "false")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from application.dtos.payments import AccessToken, PushResult, QueryState, StatusQueryResult
from core.settings import MpesaRetry, MpesaSettings, VerifierSettings
from domain.payment.phone import validate_phone
from infrastructure.external.payments.mpesa_client import validate_amount, validate_reference
from infrastructure.models import Base
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


class FakeGateway:
    """In-memory MobileMoneyGateway.

    push_queue holds result codes (str) or exceptions consumed by successive
    initiate_push calls; an empty queue accepts the push. query_results maps
    a correlation id to a StatusQueryResult or an exception.
    """

    provider = "fake"

    def __init__(self) -> None:
        self.push_queue: list = []
        self.query_results: dict = {}
        self.push_calls: list[dict] = []
        self.query_calls: list[str] = []
        self.closed = False
        self.auth_error: Optional[Exception] = None
        self._seq = 0

    async def authenticate(self) -> AccessToken:
        if self.auth_error is not None:
            raise self.auth_error
        return AccessToken(value="fake-token", expires_at=datetime.now(timezone.utc) + timedelta(hours=1))

    async def initiate_push(self, phone, amount, reference, description=None) -> PushResult:
        msisdn = validate_phone(phone)
        whole = validate_amount(amount)
        validate_reference(reference)
        self.push_calls.append({"phone": msisdn, "amount": whole, "reference": reference})

        code = "0"
        if self.push_queue:
            item = self.push_queue.pop(0)
            if isinstance(item, Exception):
                raise item
            code = item

        self._seq += 1
        accepted = code == "0"
        return PushResult(
            correlation_id=f"ws_CO_{self._seq:06d}" if accepted else None,
            counterparty_id=f"29115-{self._seq}",
            result_code=code,
            result_desc="Success. Request accepted for processing" if accepted else "Rejected by gateway",
            customer_message="Success. Request accepted for processing" if accepted else None,
            phone=msisdn,
            amount=Decimal(whole),
        )

    async def query_status(self, correlation_id: str) -> StatusQueryResult:
        self.query_calls.append(correlation_id)
        item = self.query_results.get(correlation_id)
        if isinstance(item, Exception):
            raise item
        if item is None:
            return StatusQueryResult(state=QueryState.PROCESSING, correlation_id=correlation_id)
        return item

    def resolve(self, correlation_id: str, result_code: str, result_desc: str = "") -> None:
        self.query_results[correlation_id] = StatusQueryResult(
            state=QueryState.RESOLVED,
            correlation_id=correlation_id,
            result_code=result_code,
            result_desc=result_desc or None,
        )

    def not_found(self, correlation_id: str) -> None:
        self.query_results[correlation_id] = StatusQueryResult(
            state=QueryState.NOT_FOUND,
            correlation_id=correlation_id,
            error_code="404.001.03",
        )

    async def aclose(self) -> None:
        self.closed = True


def build_stk_callback(
    correlation_id: str,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: Optional[str] = "NLJ7RT61SV",
    amount: Optional[float] = 1,
    phone: int = 254708374149,
) -> dict:
    """Build a notification in the native Daraja shape."""
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": correlation_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20191219102115},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def stk_callback():
    return build_stk_callback


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def mpesa_config() -> MpesaSettings:
    return MpesaSettings(
        _env_file=None,
        environment="sandbox",
        shortcode="174379",
        passkey="test-passkey",
        consumer_key="test-key",
        consumer_secret="test-secret",
        callback_url="https://payments.example.com/api/v1/payments/mpesa/callback",
        retry=MpesaRetry(max=2, base_backoff=0, max_backoff=0),
        verifier=VerifierSettings(
            grace_seconds=60,
            poll_interval_seconds=30,
            max_poll_attempts=3,
            not_found_max_polls=2,
            max_wait_seconds=900,
        ),
    )


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(bind=engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    def _factory(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory=session_factory, readonly=readonly)
    return _factory


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """A file database with a real connection pool.

    Each session gets its own connection, so concurrent units of work race
    on SQLite locks the way separate service instances would.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(bind=engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def file_uow_factory(file_session_factory):
    def _factory(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory=file_session_factory, readonly=readonly)
    return _factory
