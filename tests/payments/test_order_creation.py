from datetime import timedelta
from decimal import Decimal

import pytest

from application.dtos.payments import CreateOrderRequest, PollStatusRequest
from application.services.order_service import OrderCreationService
from application.services.reconciliation_service import OrderReconciler
from application.services.status_service import OrderStatusService
from domain.common.exceptions import GatewayRequestError, InvalidRequestException
from domain.payment.entity import ChannelHint, OrderStatus, TradeStatus
from infrastructure.repositories.order_repository import SQLAlchemyOrderRepository


@pytest.mark.asyncio
async def test_create_order_then_poll_pending(uow_factory, gateway, fetch_order):
    service = OrderCreationService(uow_factory, gateway, payment_window_minutes=30)
    result = await service.create_order(
        CreateOrderRequest(user_id="user-1", amount=Decimal("100.00"), channel_hint=ChannelHint.MOBILE),
        client_ip="10.0.0.8",
    )

    assert result.order_ref.startswith("ord_")
    assert result.pay_url.endswith(result.order_ref)
    intent = gateway.intents[0]
    assert intent.order_ref == result.order_ref
    assert intent.channel_hint == ChannelHint.MOBILE
    assert intent.timeout_minutes == 30
    assert intent.subject == "Tuition Payment"

    order = await fetch_order(result.order_ref)
    assert order.status == OrderStatus.PENDING
    assert order.amount == Decimal("100.00")
    assert order.client_ip == "10.0.0.8"
    assert order.expire_at - order.created_at == timedelta(minutes=30)

    gateway.set_trade(result.order_ref, TradeStatus.WAIT_PAYMENT)
    status_service = OrderStatusService(uow_factory, OrderReconciler(uow_factory, gateway))
    view = await status_service.poll_status(PollStatusRequest(order_ref=result.order_ref))
    assert view.status == OrderStatus.PENDING
    assert view.expire_at is not None
    assert (await fetch_order(result.order_ref)).status == OrderStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
async def test_non_positive_amount_is_invalid_request(uow_factory, gateway, amount):
    service = OrderCreationService(uow_factory, gateway)
    with pytest.raises(InvalidRequestException):
        await service.create_order(CreateOrderRequest(user_id="user-1", amount=amount))
    assert gateway.intents == []


@pytest.mark.asyncio
async def test_gateway_failure_leaves_no_order(uow_factory, gateway):
    gateway.create_error = GatewayRequestError("sign failed", provider="fake")
    service = OrderCreationService(uow_factory, gateway)

    with pytest.raises(GatewayRequestError):
        await service.create_order(CreateOrderRequest(user_id="user-1", amount=Decimal("10.00")))

    async with uow_factory(readonly=True) as uow:
        assert await uow.order_repository.get_latest_by_user("user-1") is None


@pytest.mark.asyncio
async def test_persist_failure_still_returns_pay_url(uow_factory, gateway, monkeypatch):
    async def _boom(self, order):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(SQLAlchemyOrderRepository, "create", _boom)
    service = OrderCreationService(uow_factory, gateway)

    result = await service.create_order(CreateOrderRequest(user_id="user-1", amount=Decimal("10.00")))

    assert result.pay_url
    assert gateway.intents[0].order_ref == result.order_ref
