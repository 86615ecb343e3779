"""
Order creation use-case.

The gateway intent is created before the local order is written: a gateway
failure leaves no local state, and a failed local write still hands the
payment URL back to the caller.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from application.dtos.payments import CreateOrderRequest, CreateOrderResult, CreatePaymentIntent
from application.ports.payment_gateway import PaymentGateway
from application.utils.references import generate_order_ref
from core.logging_config import get_logger
from domain.common.exceptions import InvalidRequestException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.service import PaymentDomainService


logger = get_logger(__name__)


class OrderCreationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        *,
        payment_window_minutes: int = 30,
        default_subject: str = "Tuition Payment",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self._window = timedelta(minutes=payment_window_minutes)
        self._window_minutes = payment_window_minutes
        self._default_subject = default_subject
        self._clock = clock

    async def create_order(self, req: CreateOrderRequest, *, client_ip: Optional[str] = None) -> CreateOrderResult:
        if req.amount <= 0:
            raise InvalidRequestException(f"Amount must be positive: {req.amount}", field="amount")

        now = self._clock()
        order_ref = generate_order_ref(now)
        subject = req.subject or self._default_subject
        logger.info(
            "order_create_request",
            order_ref=order_ref,
            user_id=req.user_id,
            amount=str(req.amount),
            channel=req.channel_hint.value,
            provider=self.gateway.provider,
        )

        # GatewayRequestError propagates: nothing has been written yet
        pay_url = await self.gateway.create_payment_intent(
            CreatePaymentIntent(
                order_ref=order_ref,
                amount=req.amount,
                subject=subject,
                return_url=req.return_url,
                channel_hint=req.channel_hint,
                timeout_minutes=self._window_minutes,
            )
        )

        try:
            async with self._uow_factory() as uow:
                await PaymentDomainService(uow.order_repository).create_order(
                    order_ref=order_ref,
                    user_id=req.user_id,
                    amount=req.amount,
                    window=self._window,
                    subject=subject,
                    channel=req.channel_hint,
                    client_ip=client_ip,
                    now=now,
                )
        except Exception:
            # The gateway trade exists without a local order; keep enough to rebuild it by hand
            logger.exception(
                "order_persist_failed",
                order_ref=order_ref,
                user_id=req.user_id,
                amount=str(req.amount),
                subject=subject,
                expire_at=(now + self._window).isoformat(),
            )
        else:
            logger.info("order_create_response", order_ref=order_ref, user_id=req.user_id)

        return CreateOrderResult(pay_url=pay_url, order_ref=order_ref)
