"""
Administrative refund of a paid order.

Rules are checked and the refund is reserved on the order (compare-and-set on
PAID with no refund in flight) before the gateway is called, so concurrent
refunds cannot both reach the gateway. A gateway rejection releases the
reservation and surfaces the gateway's reason verbatim.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from application.dtos.payments import RefundOrderRequest, RefundOrderResult, RefundTradeRequest
from application.ports.payment_gateway import PaymentGateway
from application.utils.references import generate_refund_ref
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Order, OrderStatus
from domain.payment.service import (
    ConcurrentClaimLost,
    InvalidStateException,
    OrderNotFoundException,
    PaymentDomainService,
    RefundInProgressException,
    RefundRejectedException,
)


logger = get_logger(__name__)


class RefundService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        *,
        default_reason: str = "Refund requested by applicant",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self._default_reason = default_reason
        self._clock = clock

    async def _reload(self, order_ref: str) -> Order:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_order_ref(order_ref)
        if order is None:
            raise OrderNotFoundException(order_ref)
        return order

    async def _reserve(self, order: Order, refund_ref: str, refund_amount: Decimal) -> Order:
        try:
            async with self._uow_factory() as uow:
                return await PaymentDomainService(uow.order_repository).reserve_refund(
                    order, refund_ref=refund_ref, refund_amount=refund_amount
                )
        except ConcurrentClaimLost:
            # Another refund reserved or finished first; report what is stored now
            async with self._uow_factory(readonly=True) as uow:
                current = await uow.order_repository.get_by_order_ref(order.order_ref)
                logger.info("refund_reservation_lost", order_ref=order.order_ref, status=current.status.value)
                PaymentDomainService(uow.order_repository).check_refundable(current, refund_amount)
            raise RefundInProgressException(current.order_ref, current.refund_ref)

    async def refund(self, req: RefundOrderRequest) -> RefundOrderResult:
        order = await self._reload(req.order_ref)
        refund_ref = generate_refund_ref(self._clock())
        reserved = await self._reserve(order, refund_ref, req.refund_amount)

        reason = req.reason or self._default_reason
        operator = req.operator_id or "system"
        logger.info(
            "refund_request",
            order_ref=order.order_ref,
            refund_ref=refund_ref,
            refund_amount=str(req.refund_amount),
            operator_id=operator,
            provider=self.gateway.provider,
        )

        try:
            result = await self.gateway.refund_trade(
                RefundTradeRequest(
                    order_ref=order.order_ref,
                    refund_ref=refund_ref,
                    amount=req.refund_amount,
                    reason=reason,
                )
            )
        except Exception:
            # Outcome unknown at the gateway; the reservation stays until an operator checks out_request_no
            logger.exception("refund_outcome_unknown", order_ref=order.order_ref, refund_ref=refund_ref)
            raise

        if not result.success:
            logger.warning(
                "refund_rejected",
                order_ref=order.order_ref,
                refund_ref=refund_ref,
                provider_code=result.provider_code,
                message=result.message,
            )
            async with self._uow_factory() as uow:
                await PaymentDomainService(uow.order_repository).release_refund(reserved, refund_ref=refund_ref)
            raise RefundRejectedException(result.message, order_ref=order.order_ref, provider_code=result.provider_code)

        now = self._clock()
        try:
            async with self._uow_factory() as uow:
                refunded = await PaymentDomainService(uow.order_repository).apply_refund(
                    reserved,
                    refund_ref=refund_ref,
                    refund_amount=req.refund_amount,
                    reason=reason,
                    operator_id=operator,
                    now=now,
                )
                if refunded.status == OrderStatus.REFUNDED:
                    await uow.application_store.mark_withdrawn(refunded.user_id, now)
        except ConcurrentClaimLost:
            # Money has moved at the gateway but the reserved row changed underneath
            current = await self._reload(order.order_ref)
            logger.error(
                "refund_persist_lost",
                order_ref=order.order_ref,
                refund_ref=refund_ref,
                refund_amount=str(req.refund_amount),
                status=current.status.value,
                stored_refund_ref=current.refund_ref,
            )
            raise InvalidStateException(current.status, "refund")

        logger.info(
            "order_refunded",
            order_ref=refunded.order_ref,
            refund_ref=refund_ref,
            status=refunded.status.value,
        )
        return RefundOrderResult(
            refund_ref=refund_ref,
            order_ref=refunded.order_ref,
            refund_amount=req.refund_amount,
            status=refunded.status,
        )
