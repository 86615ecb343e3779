from decimal import Decimal
from urllib.parse import urlencode

import httpx
import pytest
import pytest_asyncio

from api.dependencies import get_gateway, get_uow_factory
from core.config import settings
from core.settings import payment_settings
from domain.payment.entity import OrderStatus, TradeStatus
from main import app


FORM = {"content-type": "application/x-www-form-urlencoded"}


@pytest_asyncio.fixture
async def client(uow_factory, gateway):
    app.dependency_overrides[get_uow_factory] = lambda: uow_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_token(monkeypatch) -> dict:
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret")
    return {"x-admin-token": "s3cret"}


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
    assert resp.headers.get("x-request-id")


@pytest.mark.asyncio
async def test_create_order_and_poll(client, gateway):
    resp = await client.post("/api/v1/payments/orders", json={"user_id": "user-1", "amount": "100.00"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == 0
    order_ref = body["data"]["order_ref"]
    assert body["data"]["pay_url"].endswith(order_ref)

    gateway.set_trade(order_ref, TradeStatus.WAIT_PAYMENT)
    resp = await client.get("/api/v1/payments/orders/status", params={"order_ref": order_ref})
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "PENDING"


@pytest.mark.asyncio
async def test_create_order_rejects_non_positive_amount(client, gateway):
    resp = await client.post("/api/v1/payments/orders", json={"user_id": "user-1", "amount": "0"})

    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "InvalidRequest"
    assert gateway.intents == []


@pytest.mark.asyncio
async def test_poll_requires_identifier(client):
    resp = await client.get("/api/v1/payments/orders/status")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_poll_unknown_order_is_404(client):
    resp = await client.get("/api/v1/payments/orders/status", params={"order_ref": "missing"})
    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "OrderNotFound"


@pytest.mark.asyncio
async def test_notify_replies_plain_success(client, seed_order, fetch_order):
    await seed_order("ord_1")
    form = urlencode({
        "out_trade_no": "ord_1",
        "trade_status": "TRADE_SUCCESS",
        "trade_no": "T-1",
        "total_amount": "100.00",
        "sign": "valid",
    })

    resp = await client.post("/api/v1/payments/notify/alipay", content=form, headers=FORM)

    assert resp.status_code == 200
    assert resp.text == "success"
    assert resp.headers["content-type"].startswith("text/plain")
    assert (await fetch_order("ord_1")).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_notify_bad_signature_replies_fail(client, seed_order):
    await seed_order("ord_1")
    form = urlencode({"out_trade_no": "ord_1", "trade_status": "TRADE_SUCCESS", "sign": "forged"})

    resp = await client.post("/api/v1/payments/notify/alipay", content=form, headers=FORM)

    assert resp.text == "fail"


@pytest.mark.asyncio
async def test_notify_requires_form_encoding(client):
    resp = await client.post("/api/v1/payments/notify/alipay", json={"out_trade_no": "ord_1"})
    assert resp.text == "fail"


@pytest.mark.asyncio
async def test_notify_enforces_ip_allowlist(client, monkeypatch):
    monkeypatch.setattr(payment_settings.webhook, "ip_allowlist", ["110.75.0.0/16"])

    resp = await client.post("/api/v1/payments/notify/alipay", content="sign=valid", headers=FORM)

    assert resp.status_code == 403
    assert resp.text == "fail"


@pytest.mark.asyncio
async def test_refund_requires_admin_token(client, admin_token, seed_order, gateway):
    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    payload = {"order_ref": "ord_1", "refund_amount": "100.00"}

    denied = await client.post("/api/v1/payments/refunds", json=payload)
    assert denied.status_code == 401
    assert gateway.refund_calls == []

    resp = await client.post("/api/v1/payments/refunds", json=payload, headers=admin_token)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "REFUNDED"
    assert Decimal(resp.json()["data"]["refund_amount"]) == Decimal("100.00")


@pytest.mark.asyncio
async def test_refund_rejection_maps_to_400(client, admin_token, seed_order, gateway):
    from application.dtos.payments import RefundTradeResult

    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    gateway.refund_result = RefundTradeResult(success=False, message="Insufficient balance")

    resp = await client.post(
        "/api/v1/payments/refunds", json={"order_ref": "ord_1", "refund_amount": "10.00"}, headers=admin_token
    )

    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient balance"


@pytest.mark.asyncio
async def test_refund_of_unpaid_order_conflicts(client, admin_token, seed_order):
    await seed_order("ord_1")

    resp = await client.post(
        "/api/v1/payments/refunds", json={"order_ref": "ord_1", "refund_amount": "10.00"}, headers=admin_token
    )

    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_refund_losing_persist_race_reports_invalid_state(client, admin_token, engine, seed_order, gateway, monkeypatch):
    from sqlalchemy import update

    from infrastructure.models.payment import OrderModel

    await seed_order("ord_1", status="PAID", gateway_transaction_id="T-1")
    original = gateway.refund_trade

    async def _competing_write(req):
        async with engine.begin() as conn:
            await conn.execute(
                update(OrderModel).where(OrderModel.order_ref == "ord_1").values(status="REFUNDED", refund_ref="ref_other")
            )
        return await original(req)

    monkeypatch.setattr(gateway, "refund_trade", _competing_write)

    resp = await client.post(
        "/api/v1/payments/refunds", json={"order_ref": "ord_1", "refund_amount": "10.00"}, headers=admin_token
    )

    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "InvalidState"
    assert "REFUNDED" in resp.json()["message"]


@pytest.mark.asyncio
async def test_manual_sweep(client, admin_token, seed_order, gateway, fetch_order):
    from datetime import datetime, timedelta, timezone

    await seed_order("ord_1", expire_at=datetime.now(timezone.utc) - timedelta(minutes=5))
    gateway.set_trade("ord_1", TradeStatus.WAIT_PAYMENT)

    resp = await client.post("/api/v1/payments/sweep", headers=admin_token)

    assert resp.status_code == 200
    assert resp.json()["data"]["processed"] == 1
    assert (await fetch_order("ord_1")).status == OrderStatus.CLOSED
