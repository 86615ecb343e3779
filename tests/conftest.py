"""Pytest bootstrap configuration.

Environment variables are set before application settings are imported.
Each test gets its own SQLite database file and an in-memory gateway fake.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import parse_qsl

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from application.dtos.payments import (
    CreatePaymentIntent,
    RefundTradeRequest,
    RefundTradeResult,
    TradeQueryResult,
    VerifiedNotification,
)
from domain.common.exceptions import GatewayRequestError, GatewaySignatureInvalid
from domain.payment.entity import TradeStatus
from infrastructure.database import build_session_factory, create_tables
from infrastructure.models import ApplicationModel, OrderModel
from infrastructure.repositories.application_repository import SQLAlchemyApplicationStore
from infrastructure.unit_of_work import uow_factory_for
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


class FakeGateway:
    """In-memory PaymentGateway used by service and route tests."""

    provider = "fake"

    def __init__(self) -> None:
        self.trades: dict[str, Any] = {}
        self.intents: list[CreatePaymentIntent] = []
        self.query_calls: list[str] = []
        self.close_calls: list[str] = []
        self.refund_calls: list[RefundTradeRequest] = []
        self.create_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.refund_result = RefundTradeResult(success=True, message="Success")
        # Set to hold query_trade until released by the test
        self.query_gate: Optional[asyncio.Event] = None
        self.query_started = asyncio.Event()

    def set_trade(
        self,
        order_ref: str,
        status: TradeStatus,
        *,
        trade_no: Optional[str] = "T-100",
        total_amount: Optional[Decimal] = None,
    ) -> None:
        self.trades[order_ref] = TradeQueryResult(
            found=status != TradeStatus.NOT_FOUND,
            trade_status=status,
            gateway_transaction_id=trade_no if status == TradeStatus.SUCCESS else None,
            total_amount=total_amount,
            raw={"trade_status": status.value},
        )

    def fail_query(self, order_ref: str, message: str = "40004:ACQ.SYSTEM_ERROR") -> None:
        self.trades[order_ref] = GatewayRequestError(message, provider=self.provider, provider_code="ACQ.SYSTEM_ERROR")

    async def create_payment_intent(self, req: CreatePaymentIntent) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.intents.append(req)
        return f"https://gateway.example/pay?out_trade_no={req.order_ref}"

    async def query_trade(self, order_ref: str) -> TradeQueryResult:
        self.query_calls.append(order_ref)
        self.query_started.set()
        if self.query_gate is not None:
            await self.query_gate.wait()
        result = self.trades.get(order_ref)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return TradeQueryResult(found=False, trade_status=TradeStatus.NOT_FOUND)
        return result

    async def close_trade(self, order_ref: str) -> None:
        self.close_calls.append(order_ref)
        if self.close_error is not None:
            raise self.close_error

    async def refund_trade(self, req: RefundTradeRequest) -> RefundTradeResult:
        self.refund_calls.append(req)
        return self.refund_result

    def verify_callback(self, headers: dict[str, Any], body: bytes) -> VerifiedNotification:
        params = dict(parse_qsl(body.decode("utf-8")))
        if params.pop("sign", None) != "valid":
            raise GatewaySignatureInvalid("Invalid signature", provider=self.provider)
        internal = PROVIDER_STATUS_TO_INTERNAL["alipay"].get(params.get("trade_status", ""))
        total = params.get("total_amount")
        return VerifiedNotification(
            order_ref=params["out_trade_no"],
            trade_status=TradeStatus(internal) if internal else None,
            gateway_transaction_id=params.get("trade_no"),
            total_amount=Decimal(total) if total else None,
            provider=self.provider,
            data=params,
            raw_body=body,
        )


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}"


@pytest_asyncio.fixture
async def engine(db_url):
    # NullPool: no connection outlives the event loop that opened it
    engine = create_async_engine(db_url, poolclass=NullPool)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow_factory(engine):
    return uow_factory_for(build_session_factory(engine))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def paid_marks(monkeypatch) -> list:
    """Records every ApplicationStore.mark_paid call."""
    calls: list = []
    original = SQLAlchemyApplicationStore.mark_paid

    async def _spy(self, user_id, order_ref, amount, paid_at):
        calls.append((user_id, order_ref))
        await original(self, user_id, order_ref, amount, paid_at)

    monkeypatch.setattr(SQLAlchemyApplicationStore, "mark_paid", _spy)
    return calls


@pytest.fixture
def seed_order(engine):
    async def _seed(
        order_ref: str = "ord_1",
        *,
        user_id: str = "user-1",
        amount: Decimal = Decimal("100.00"),
        status: str = "PENDING",
        expire_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        processing_at: Optional[datetime] = None,
        gateway_transaction_id: Optional[str] = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        session = build_session_factory(engine)()
        async with session.begin():
            session.add(
                OrderModel(
                    order_ref=order_ref,
                    user_id=user_id,
                    amount=amount,
                    status=status,
                    channel="desktop",
                    expire_at=expire_at or now + timedelta(minutes=30),
                    created_at=created_at or now,
                    updated_at=now,
                    processing_at=processing_at,
                    gateway_transaction_id=gateway_transaction_id,
                    paid_at=now if gateway_transaction_id else None,
                )
            )
        await session.close()

    return _seed


@pytest.fixture
def seed_application(engine):
    async def _seed(user_id: str = "user-1", status: str = "submitted") -> None:
        session = build_session_factory(engine)()
        async with session.begin():
            session.add(ApplicationModel(user_id=user_id, status=status))
        await session.close()

    return _seed


@pytest.fixture
def fetch_order(uow_factory):
    async def _fetch(order_ref: str):
        async with uow_factory(readonly=True) as uow:
            return await uow.order_repository.get_by_order_ref(order_ref)

    return _fetch


@pytest.fixture
def fetch_application(engine):
    async def _fetch(user_id: str = "user-1") -> Optional[ApplicationModel]:
        session = build_session_factory(engine)()
        try:
            result = await session.execute(select(ApplicationModel).where(ApplicationModel.user_id == user_id))
            return result.scalar_one_or_none()
        finally:
            await session.close()

    return _fetch
