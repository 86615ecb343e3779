"""
Payments API routes.

Keep this thin: services are composed in api.dependencies and no SDK details
live here. The gateway notification endpoint replies with Alipay's plain-text
tokens instead of the JSON envelope.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import (
    get_order_creation_service,
    get_order_status_service,
    get_refund_service,
    get_sweeper,
    get_webhook_service,
    require_admin_token,
)
from application.dtos.payments import CreateOrderRequest, PollStatusRequest, RefundOrderRequest
from application.services.order_service import OrderCreationService
from application.services.reconciliation_service import ReconciliationSweeper
from application.services.refund_service import RefundService
from application.services.status_service import OrderStatusService
from application.services.webhook_service import WebhookIngestionService
from core.logging_config import get_logger
from core.response import gateway_ack_response, success_response
from core.settings import payment_settings
from domain.common.exceptions import InvalidRequestException


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_allowed(remote_ip: Optional[str]) -> bool:
    allowlist = payment_settings.webhook.ip_allowlist or []
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/orders", summary="Create payment order")
async def create_order(
    payload: CreateOrderRequest,
    request: Request,
    service: OrderCreationService = Depends(get_order_creation_service),
):
    result = await service.create_order(payload, client_ip=getattr(request.state, "client_ip", None))
    return success_response(data=result.model_dump(mode="json"), message="Order created")


@router.post("/notify/alipay", summary="Alipay asynchronous notification", include_in_schema=False)
async def alipay_notify(
    request: Request,
    service: WebhookIngestionService = Depends(get_webhook_service),
):
    remote_ip = request.client.host if request.client else None
    if not _ip_allowed(remote_ip):
        logger.warning("webhook_ip_not_allowed", remote_ip=remote_ip)
        return gateway_ack_response("fail", status_code=403)

    ct = (request.headers.get("content-type") or "").lower()
    if "application/x-www-form-urlencoded" not in ct:
        logger.warning("webhook_content_type_unsupported", content_type=ct)
        return gateway_ack_response("fail")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    ack = await service.handle_callback(headers, raw_body)
    return gateway_ack_response(ack.token)


@router.get("/orders/status", summary="Poll order status")
async def poll_order_status(
    order_ref: Optional[str] = Query(default=None, max_length=64),
    user_id: Optional[str] = Query(default=None, max_length=100),
    service: OrderStatusService = Depends(get_order_status_service),
):
    if not (order_ref or user_id):
        raise InvalidRequestException("order_ref or user_id is required", field="order_ref")
    view = await service.poll_status(PollStatusRequest(order_ref=order_ref, user_id=user_id))
    return success_response(data=view.model_dump(mode="json"), message="Order status")


@router.post("/refunds", summary="Refund a paid order", dependencies=[Depends(require_admin_token)])
async def refund_order(
    payload: RefundOrderRequest,
    service: RefundService = Depends(get_refund_service),
):
    result = await service.refund(payload)
    return success_response(data=result.model_dump(mode="json"), message="Refund successful")


@router.post("/sweep", summary="Run one reconciliation sweep", dependencies=[Depends(require_admin_token)])
async def run_sweep(sweeper: ReconciliationSweeper = Depends(get_sweeper)):
    result = await sweeper.sweep()
    return success_response(data=result.model_dump(mode="json"), message="Sweep finished")
