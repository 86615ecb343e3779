"""
Gateway notification ingestion.

The signature is verified before anything else. Replies are expressed as a
WebhookAck: `accepted=False` only for signature or amount failures (and
unexpected internal errors) so the gateway redelivers; everything else is
acknowledged, including duplicates and unknown orders.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable

from application.dtos.payments import VerifiedNotification, WebhookAck
from application.ports.payment_gateway import PaymentGateway
from application.services.reconciliation_service import settle_paid
from core.logging_config import get_logger
from domain.common.exceptions import GatewaySignatureInvalid, InvalidRequestException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Order, OrderStatus, SETTLED_STATUSES, SyncSource, TradeStatus
from domain.payment.service import ConcurrentClaimLost, PaymentDomainService


logger = get_logger(__name__)


class WebhookIngestionService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        *,
        amount_epsilon: Decimal = Decimal("0.01"),
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self._epsilon = amount_epsilon

    async def handle_callback(self, headers: dict[str, Any], body: bytes) -> WebhookAck:
        try:
            notification = self.gateway.verify_callback(headers, body)
        except GatewaySignatureInvalid as exc:
            logger.error(
                "webhook_signature_invalid",
                provider=self.gateway.provider,
                reason=exc.message,
                body_size=len(body),
            )
            return WebhookAck(accepted=False, reason="signature_invalid")
        except InvalidRequestException as exc:
            # Authentic but unusable; redelivery would not help
            logger.error("webhook_payload_invalid", provider=self.gateway.provider, reason=exc.message)
            return WebhookAck(accepted=True, reason="payload_invalid")

        logger.info(
            "webhook_verified",
            provider=notification.provider,
            order_ref=notification.order_ref,
            trade_status=notification.trade_status.value if notification.trade_status else None,
        )
        try:
            return await self._apply(notification)
        except Exception:
            logger.exception("webhook_processing_failed", order_ref=notification.order_ref)
            return WebhookAck(accepted=False, reason="internal_error")

    async def _apply(self, notification: VerifiedNotification) -> WebhookAck:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_order_ref(notification.order_ref)
        if order is None:
            # Possibly a trade whose local write failed at creation; needs manual reconciliation
            logger.error(
                "webhook_order_unknown",
                order_ref=notification.order_ref,
                gateway_transaction_id=notification.gateway_transaction_id,
                total_amount=str(notification.total_amount) if notification.total_amount is not None else None,
            )
            return WebhookAck(accepted=True, reason="order_unknown")

        if notification.trade_status not in (TradeStatus.SUCCESS, TradeStatus.CLOSED):
            logger.info("webhook_ignored", order_ref=order.order_ref, status=order.status.value)
            return WebhookAck(accepted=True, reason="ignored")

        if notification.total_amount is None or not order.amount_matches(notification.total_amount, self._epsilon):
            logger.error(
                "webhook_amount_mismatch",
                order_ref=order.order_ref,
                expected=str(order.amount),
                reported=str(notification.total_amount),
            )
            return WebhookAck(accepted=False, reason="amount_mismatch")

        if notification.trade_status == TradeStatus.SUCCESS:
            return await self._on_success(order, notification)
        return await self._on_closed(order, notification)

    async def _on_success(self, order: Order, notification: VerifiedNotification) -> WebhookAck:
        if order.status in SETTLED_STATUSES:
            logger.info("webhook_duplicate", order_ref=order.order_ref, status=order.status.value)
            return WebhookAck(accepted=True, reason="duplicate")
        if order.status == OrderStatus.CLOSED:
            logger.error("webhook_paid_after_close", order_ref=order.order_ref, gateway_transaction_id=notification.gateway_transaction_id)
            return WebhookAck(accepted=True, reason="order_closed")
        if order.status == OrderStatus.PROCESSING:
            # The claim holder resolves it from its own query
            logger.info("webhook_order_claimed", order_ref=order.order_ref)
            return WebhookAck(accepted=True, reason="in_progress")
        if not notification.gateway_transaction_id:
            logger.error("webhook_missing_trade_no", order_ref=order.order_ref)
            return WebhookAck(accepted=True, reason="payload_invalid")

        try:
            async with self._uow_factory() as uow:
                await settle_paid(
                    uow,
                    order,
                    expected=OrderStatus.PENDING,
                    transaction_id=notification.gateway_transaction_id,
                    source=SyncSource.WEBHOOK,
                    raw=notification.data,
                )
        except ConcurrentClaimLost:
            logger.info("webhook_transition_lost", order_ref=order.order_ref)
            return WebhookAck(accepted=True, reason="concurrent")
        return WebhookAck(accepted=True)

    async def _on_closed(self, order: Order, notification: VerifiedNotification) -> WebhookAck:
        if order.status != OrderStatus.PENDING:
            logger.info("webhook_close_noop", order_ref=order.order_ref, status=order.status.value)
            return WebhookAck(accepted=True, reason="noop")
        try:
            async with self._uow_factory() as uow:
                await PaymentDomainService(uow.order_repository).mark_closed(
                    order,
                    expected=OrderStatus.PENDING,
                    source=SyncSource.WEBHOOK,
                    raw=notification.data,
                )
        except ConcurrentClaimLost:
            logger.info("webhook_transition_lost", order_ref=order.order_ref)
            return WebhookAck(accepted=True, reason="concurrent")
        logger.info("order_closed", order_ref=order.order_ref, source=SyncSource.WEBHOOK.value)
        return WebhookAck(accepted=True)
