"""
On-demand status query for a client waiting on the payment result.

One synchronous attempt per call; the client is expected to poll with backoff.
"""
from __future__ import annotations

from typing import Callable

from application.dtos.payments import OrderStatusView, PollStatusRequest
from application.services.reconciliation_service import OrderReconciler
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Order, OrderStatus, SyncSource
from domain.payment.service import ConcurrentClaimLost, OrderNotFoundException


logger = get_logger(__name__)


def to_status_view(order: Order) -> OrderStatusView:
    # PROCESSING is an internal lock; callers keep seeing PENDING
    status = OrderStatus.PENDING if order.status == OrderStatus.PROCESSING else order.status
    return OrderStatusView(
        order_ref=order.order_ref,
        status=status,
        amount=order.amount,
        expire_at=order.expire_at if status == OrderStatus.PENDING else None,
        paid_at=order.paid_at,
        gateway_transaction_id=order.gateway_transaction_id,
    )


class OrderStatusService:
    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], reconciler: OrderReconciler) -> None:
        self._uow_factory = uow_factory
        self._reconciler = reconciler

    async def _find(self, req: PollStatusRequest) -> Order:
        async with self._uow_factory(readonly=True) as uow:
            if req.order_ref:
                order = await uow.order_repository.get_by_order_ref(req.order_ref)
            else:
                order = await uow.order_repository.get_latest_by_user(req.user_id, status=OrderStatus.PENDING)
        if order is None:
            raise OrderNotFoundException(req.order_ref or f"user:{req.user_id}")
        return order

    async def poll_status(self, req: PollStatusRequest) -> OrderStatusView:
        order = await self._find(req)
        if order.status != OrderStatus.PENDING:
            return to_status_view(order)

        try:
            order = await self._reconciler.reconcile(order, source=SyncSource.POLL, close_abandoned=False)
        except ConcurrentClaimLost:
            # Sweep or webhook got there first; report whatever is stored now
            logger.info("poll_claim_lost", order_ref=order.order_ref)
            order = await self._find(PollStatusRequest(order_ref=order.order_ref))
        return to_status_view(order)
