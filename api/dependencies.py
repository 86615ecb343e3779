"""
API依赖项 - 组装应用服务与管理端令牌校验
"""
import hmac
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header

from application.ports.payment_gateway import PaymentGateway
from application.services.order_service import OrderCreationService
from application.services.reconciliation_service import OrderReconciler, ReconciliationSweeper
from application.services.refund_service import RefundService
from application.services.status_service import OrderStatusService
from application.services.webhook_service import WebhookIngestionService
from core.config import settings
from core.settings import payment_settings
from domain.common.exceptions import UnauthorizedException
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import uow_factory_for


UowFactory = Callable[..., AbstractUnitOfWork]


def get_uow_factory() -> UowFactory:
    return uow_factory_for(AsyncSessionLocal)


@lru_cache(maxsize=1)
def _gateway() -> PaymentGateway:
    # 网关客户端读取密钥后可复用
    return get_payment_gateway()


def get_gateway() -> PaymentGateway:
    return _gateway()


def get_order_reconciler(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_gateway),
) -> OrderReconciler:
    return OrderReconciler(uow_factory, gateway, amount_epsilon=payment_settings.order.amount_epsilon)


def get_order_creation_service(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_gateway),
) -> OrderCreationService:
    return OrderCreationService(
        uow_factory,
        gateway,
        payment_window_minutes=payment_settings.order.payment_window_minutes,
        default_subject=payment_settings.order.default_subject,
    )


def get_order_status_service(
    uow_factory: UowFactory = Depends(get_uow_factory),
    reconciler: OrderReconciler = Depends(get_order_reconciler),
) -> OrderStatusService:
    return OrderStatusService(uow_factory, reconciler)


def get_webhook_service(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_gateway),
) -> WebhookIngestionService:
    return WebhookIngestionService(uow_factory, gateway, amount_epsilon=payment_settings.order.amount_epsilon)


def get_refund_service(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_gateway),
) -> RefundService:
    return RefundService(uow_factory, gateway, default_reason=payment_settings.order.default_refund_reason)


def get_sweeper(
    uow_factory: UowFactory = Depends(get_uow_factory),
    reconciler: OrderReconciler = Depends(get_order_reconciler),
) -> ReconciliationSweeper:
    return ReconciliationSweeper(
        uow_factory,
        reconciler,
        batch_size=payment_settings.sweep.batch_size,
        claim_lease_seconds=payment_settings.sweep.claim_lease_seconds,
    )


async def require_admin_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """管理端操作校验：未配置 ADMIN_API_TOKEN 时不校验"""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise UnauthorizedException("Invalid admin token")
