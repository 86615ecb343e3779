from decimal import Decimal
from urllib.parse import urlencode

import pytest

from application.dtos.payments import PollStatusRequest
from application.services.reconciliation_service import OrderReconciler
from application.services.status_service import OrderStatusService
from application.services.webhook_service import WebhookIngestionService
from domain.payment.entity import OrderStatus, SyncSource


def _form(**fields) -> bytes:
    params = {
        "out_trade_no": "ord_1",
        "trade_status": "TRADE_SUCCESS",
        "trade_no": "2026101922001",
        "total_amount": "100.00",
        "sign": "valid",
    }
    params.update(fields)
    return urlencode({k: v for k, v in params.items() if v is not None}).encode()


@pytest.fixture
def webhook(uow_factory, gateway):
    return WebhookIngestionService(uow_factory, gateway, amount_epsilon=Decimal("0.01"))


@pytest.mark.asyncio
async def test_success_notification_marks_paid_once(webhook, uow_factory, gateway, seed_order, seed_application, fetch_order, fetch_application, paid_marks):
    await seed_order("ord_1")
    await seed_application("user-1")

    ack = await webhook.handle_callback({}, _form())
    assert ack.accepted and ack.token == "success"

    order = await fetch_order("ord_1")
    assert order.status == OrderStatus.PAID
    assert order.gateway_transaction_id == "2026101922001"
    assert order.synced_by == SyncSource.WEBHOOK
    assert order.raw_notification["trade_no"] == "2026101922001"

    status_service = OrderStatusService(uow_factory, OrderReconciler(uow_factory, gateway))
    view = await status_service.poll_status(PollStatusRequest(order_ref="ord_1"))
    assert view.status == OrderStatus.PAID
    assert view.gateway_transaction_id == "2026101922001"
    assert gateway.query_calls == []

    replay = await webhook.handle_callback({}, _form())
    assert replay.accepted
    assert replay.reason == "duplicate"
    assert paid_marks == [("user-1", "ord_1")]

    application = await fetch_application("user-1")
    assert application.status == "paid"
    assert application.payment_order_ref == "ord_1"
    assert application.enrolled_at is not None


@pytest.mark.asyncio
async def test_invalid_signature_rejected_without_write(webhook, seed_order, fetch_order):
    await seed_order("ord_1")

    ack = await webhook.handle_callback({}, _form(sign="forged"))

    assert not ack.accepted
    assert ack.token == "fail"
    assert (await fetch_order("ord_1")).status == OrderStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("trade_status", ["TRADE_SUCCESS", "TRADE_FINISHED", "TRADE_CLOSED"])
async def test_amount_mismatch_never_transitions(webhook, seed_order, fetch_order, trade_status):
    await seed_order("ord_1")

    ack = await webhook.handle_callback({}, _form(trade_status=trade_status, total_amount="1.00"))

    assert ack.token == "fail"
    assert ack.reason == "amount_mismatch"
    assert (await fetch_order("ord_1")).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_missing_amount_treated_as_mismatch(webhook, seed_order, fetch_order):
    await seed_order("ord_1")

    ack = await webhook.handle_callback({}, _form(total_amount=None))

    assert ack.token == "fail"
    assert (await fetch_order("ord_1")).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_amount_within_epsilon_accepted(webhook, seed_order, fetch_order):
    await seed_order("ord_1")

    ack = await webhook.handle_callback({}, _form(total_amount="100.01"))

    assert ack.accepted
    assert (await fetch_order("ord_1")).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_unknown_order_is_acknowledged(webhook):
    ack = await webhook.handle_callback({}, _form(out_trade_no="ord_unknown"))

    assert ack.token == "success"
    assert ack.reason == "order_unknown"


@pytest.mark.asyncio
async def test_closed_notification_closes_pending_order(webhook, seed_order, fetch_order):
    await seed_order("ord_1")

    ack = await webhook.handle_callback({}, _form(trade_status="TRADE_CLOSED", trade_no=None))

    assert ack.accepted
    order = await fetch_order("ord_1")
    assert order.status == OrderStatus.CLOSED
    assert order.closed_at is not None
    assert order.gateway_transaction_id is None


@pytest.mark.asyncio
async def test_closed_notification_after_refund_is_noop(webhook, seed_order, fetch_order):
    await seed_order("ord_1", status="REFUNDED", gateway_transaction_id="T-1")

    ack = await webhook.handle_callback({}, _form(trade_status="TRADE_CLOSED"))

    assert ack.accepted
    assert (await fetch_order("ord_1")).status == OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_success_while_claimed_is_acknowledged_without_write(webhook, seed_order, fetch_order, paid_marks):
    await seed_order("ord_1", status="PROCESSING")

    ack = await webhook.handle_callback({}, _form())

    assert ack.accepted
    assert ack.reason == "in_progress"
    assert (await fetch_order("ord_1")).status == OrderStatus.PROCESSING
    assert paid_marks == []


@pytest.mark.asyncio
async def test_wait_buyer_pay_notification_ignored(webhook, seed_order, fetch_order):
    await seed_order("ord_1")

    ack = await webhook.handle_callback({}, _form(trade_status="WAIT_BUYER_PAY"))

    assert ack.accepted
    assert (await fetch_order("ord_1")).status == OrderStatus.PENDING
