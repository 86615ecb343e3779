import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import update

from application.dtos.payments import RefundOrderRequest
from application.dtos.payments import RefundTradeResult
from application.services.refund_service import RefundService
from domain.common.exceptions import GatewayRequestError
from domain.payment.entity import OrderStatus
from domain.payment.service import (
    InvalidAmountException,
    InvalidStateException,
    OrderNotFoundException,
    RefundInProgressException,
    RefundRejectedException,
)
from infrastructure.models.payment import OrderModel


@pytest.fixture
def refunds(uow_factory, gateway):
    return RefundService(uow_factory, gateway)


@pytest.mark.asyncio
async def test_full_refund_withdraws_application(refunds, gateway, seed_order, seed_application, fetch_order, fetch_application):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    await seed_application("user-1", status="paid")

    result = await refunds.refund(
        RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("100.00"), reason="withdrawal", operator_id="admin-7")
    )

    assert result.status == OrderStatus.REFUNDED
    assert result.refund_ref.startswith("ref_")
    call = gateway.refund_calls[0]
    assert call.order_ref == "ord_1"
    assert call.refund_ref == result.refund_ref
    assert call.amount == Decimal("100.00")

    order = await fetch_order("ord_1")
    assert order.status == OrderStatus.REFUNDED
    assert order.refund_amount == Decimal("100.00")
    assert order.refund_reason == "withdrawal"
    assert order.refund_by == "admin-7"
    assert order.refunded_at is not None
    application = await fetch_application("user-1")
    assert application.status == "withdrawn"
    assert application.refunded_at is not None

    with pytest.raises(InvalidStateException):
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("100.00")))
    assert len(gateway.refund_calls) == 1


@pytest.mark.asyncio
async def test_partial_refund_keeps_application(refunds, gateway, seed_order, seed_application, fetch_order, fetch_application):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    await seed_application("user-1", status="paid")

    result = await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("40.00")))

    assert result.status == OrderStatus.PARTIAL_REFUNDED
    order = await fetch_order("ord_1")
    assert order.status == OrderStatus.PARTIAL_REFUNDED
    assert order.refund_by == "system"
    assert order.refund_reason == "Refund requested by applicant"
    assert (await fetch_application("user-1")).status == "paid"


@pytest.mark.asyncio
async def test_refund_above_amount_rejected_before_gateway(refunds, gateway, seed_order, fetch_order):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")

    with pytest.raises(InvalidAmountException):
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("100.01")))

    assert gateway.refund_calls == []
    assert (await fetch_order("ord_1")).status == OrderStatus.PAID


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["PENDING", "PROCESSING", "CLOSED"])
async def test_refund_requires_paid_order(refunds, gateway, seed_order, status):
    await seed_order("ord_1", status=status)

    with pytest.raises(InvalidStateException):
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("1.00")))
    assert gateway.refund_calls == []


@pytest.mark.asyncio
async def test_gateway_rejection_surfaces_reason_without_state_change(refunds, gateway, seed_order, fetch_order):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    gateway.refund_result = RefundTradeResult(
        success=False, message="Trade has been settled", provider_code="ACQ.TRADE_HAS_FINISHED"
    )

    with pytest.raises(RefundRejectedException) as exc_info:
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("100.00")))

    assert exc_info.value.message == "Trade has been settled"
    assert exc_info.value.details["provider_code"] == "ACQ.TRADE_HAS_FINISHED"
    order = await fetch_order("ord_1")
    assert order.status == OrderStatus.PAID
    assert order.refund_ref is None


@pytest.mark.asyncio
async def test_refund_unknown_order(refunds, gateway):
    with pytest.raises(OrderNotFoundException):
        await refunds.refund(RefundOrderRequest(order_ref="missing", refund_amount=Decimal("1.00")))
    assert gateway.refund_calls == []


@pytest.mark.asyncio
async def test_concurrent_refund_reaches_gateway_once(refunds, gateway, seed_order, fetch_order, monkeypatch):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    in_flight = asyncio.Event()
    release = asyncio.Event()
    original = gateway.refund_trade

    async def _slow_refund(req):
        in_flight.set()
        await release.wait()
        return await original(req)

    monkeypatch.setattr(gateway, "refund_trade", _slow_refund)

    first = asyncio.create_task(refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("60.00"))))
    await in_flight.wait()

    with pytest.raises(RefundInProgressException):
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("30.00")))

    release.set()
    result = await first

    assert len(gateway.refund_calls) == 1
    assert gateway.refund_calls[0].amount == Decimal("60.00")
    order = await fetch_order("ord_1")
    assert order.status == OrderStatus.PARTIAL_REFUNDED
    assert order.refund_amount == Decimal("60.00")
    assert order.refund_ref == result.refund_ref


@pytest.mark.asyncio
async def test_gathered_refunds_record_what_the_gateway_refunded(refunds, gateway, seed_order, fetch_order):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")

    outcomes = await asyncio.gather(
        refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("60.00"))),
        refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("30.00"))),
        return_exceptions=True,
    )

    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidStateException)
    assert len(gateway.refund_calls) == 1
    order = await fetch_order("ord_1")
    assert order.refund_amount == gateway.refund_calls[0].amount


@pytest.mark.asyncio
async def test_rejection_releases_reservation_for_next_refund(refunds, gateway, seed_order, fetch_order):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    gateway.refund_result = RefundTradeResult(success=False, message="Insufficient balance")

    with pytest.raises(RefundRejectedException):
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("100.00")))

    gateway.refund_result = RefundTradeResult(success=True, message="Success")
    result = await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("100.00")))

    assert result.status == OrderStatus.REFUNDED
    assert len(gateway.refund_calls) == 2
    assert (await fetch_order("ord_1")).refund_ref == result.refund_ref


@pytest.mark.asyncio
async def test_gateway_error_keeps_reservation(refunds, gateway, seed_order, fetch_order, monkeypatch):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")

    async def _timeout(req):
        gateway.refund_calls.append(req)
        raise GatewayRequestError("read timed out", provider=gateway.provider)

    monkeypatch.setattr(gateway, "refund_trade", _timeout)

    with pytest.raises(GatewayRequestError):
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("100.00")))

    order = await fetch_order("ord_1")
    assert order.status == OrderStatus.PAID
    assert order.refund_ref == gateway.refund_calls[0].refund_ref

    with pytest.raises(RefundInProgressException):
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("100.00")))
    assert len(gateway.refund_calls) == 1


@pytest.mark.asyncio
async def test_lost_persist_reports_current_state(refunds, gateway, engine, seed_order, fetch_order, monkeypatch):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    original = gateway.refund_trade

    async def _competing_write(req):
        async with engine.begin() as conn:
            await conn.execute(
                update(OrderModel)
                .where(OrderModel.order_ref == "ord_1")
                .values(status="REFUNDED", refund_ref="ref_other", refund_amount=Decimal("100.00"))
            )
        return await original(req)

    monkeypatch.setattr(gateway, "refund_trade", _competing_write)

    with pytest.raises(InvalidStateException) as exc_info:
        await refunds.refund(RefundOrderRequest(order_ref="ord_1", refund_amount=Decimal("40.00")))

    assert exc_info.value.error_type == "InvalidState"
    order = await fetch_order("ord_1")
    assert order.status == OrderStatus.REFUNDED
    assert order.refund_ref == "ref_other"
