"""
Reconciliation use-cases: claim -> query -> resolve, shared by the sweep and
the on-demand poll, plus the periodic sweep over expired orders.

Every state write goes through PaymentDomainService compare-and-set inside its
own unit of work. The claim commits before the gateway is queried, so no
database transaction is held across network calls.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional
import uuid

from application.dtos.payments import SweepResult, TradeQueryResult
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger, bind_log_context
from domain.common.exceptions import GatewayRequestError
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Order, OrderStatus, SyncSource, TradeStatus
from domain.payment.service import ConcurrentClaimLost, PaymentDomainService


logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def settle_paid(
    uow: AbstractUnitOfWork,
    order: Order,
    *,
    expected: OrderStatus,
    transaction_id: str,
    source: SyncSource,
    raw: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Move the order to PAID and flag the application in the same transaction.

    Only the writer that wins the compare-and-set reaches the application
    store, so enrollment is recorded once per order.
    """
    service = PaymentDomainService(uow.order_repository)
    paid = await service.mark_paid(
        order,
        expected=expected,
        transaction_id=transaction_id,
        source=source,
        raw=raw,
        now=now,
    )
    await uow.application_store.mark_paid(paid.user_id, paid.order_ref, paid.amount, paid.paid_at)
    logger.info(
        "order_paid",
        order_ref=paid.order_ref,
        user_id=paid.user_id,
        source=source.value,
        gateway_transaction_id=transaction_id,
    )
    return paid


class OrderReconciler:
    """Resolve a single PENDING order against the gateway.

    `close_abandoned` enables the sweep-only rule: a trade still waiting for
    payment (or never opened) after the window is closed locally and at the
    gateway. Without it, only a gateway-reported outcome is applied.
    """

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        *,
        amount_epsilon: Decimal = Decimal("0.01"),
        clock: Clock = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._epsilon = amount_epsilon
        self._clock = clock

    async def reconcile(self, order: Order, *, source: SyncSource, close_abandoned: bool) -> Order:
        """Claim, query and resolve one order.

        Raises ConcurrentClaimLost when another writer holds or resolved the
        order. Gateway failures release the claim and return the PENDING order.
        """
        now = self._clock()
        async with self._uow_factory() as uow:
            claimed = await PaymentDomainService(uow.order_repository).claim(order, now=now)
        logger.info("order_claimed", order_ref=claimed.order_ref, source=source.value)

        try:
            result = await self._gateway.query_trade(claimed.order_ref)
        except GatewayRequestError as exc:
            logger.warning(
                "trade_query_failed",
                order_ref=claimed.order_ref,
                source=source.value,
                error=exc.message,
                provider_code=exc.provider_code,
            )
            return await self._release(claimed, error=exc.message)
        except Exception as exc:
            await self._release(claimed, error=f"{exc.__class__.__name__}: {exc}")
            raise

        try:
            return await self._resolve(claimed, result, source=source, close_abandoned=close_abandoned)
        except ConcurrentClaimLost:
            # Claim was recovered as stale while the gateway call was in flight
            logger.warning("order_claim_expired_during_resolve", order_ref=claimed.order_ref)
            return await self._reload(claimed)
        except Exception as exc:
            await self._release(claimed, error=f"{exc.__class__.__name__}: {exc}")
            raise

    async def _resolve(
        self,
        order: Order,
        result: TradeQueryResult,
        *,
        source: SyncSource,
        close_abandoned: bool,
    ) -> Order:
        now = self._clock()
        status = result.trade_status

        if status == TradeStatus.SUCCESS:
            if not result.gateway_transaction_id:
                return await self._release(order, error="gateway reported success without trade_no")
            if result.total_amount is not None and not order.amount_matches(result.total_amount, self._epsilon):
                logger.error(
                    "trade_amount_mismatch",
                    order_ref=order.order_ref,
                    expected=str(order.amount),
                    reported=str(result.total_amount),
                    source=source.value,
                )
                return await self._release(order, error=f"amount mismatch: {result.total_amount}")
            async with self._uow_factory() as uow:
                return await settle_paid(
                    uow,
                    order,
                    expected=OrderStatus.PROCESSING,
                    transaction_id=result.gateway_transaction_id,
                    source=source,
                    raw=result.raw,
                    now=now,
                )

        if status == TradeStatus.CLOSED:
            return await self._close(order, source=source, raw=result.raw, now=now)

        if not close_abandoned:
            return await self._release(order)

        if status == TradeStatus.NOT_FOUND:
            # Buyer never opened the payment page
            return await self._close(order, source=source, raw=result.raw, now=now)

        if order.is_expired(now):
            try:
                await self._gateway.close_trade(order.order_ref)
            except Exception as exc:
                logger.warning("trade_close_failed", order_ref=order.order_ref, error=str(exc))
            return await self._close(order, source=source, raw=result.raw, now=now)

        return await self._release(order)

    async def _close(self, order: Order, *, source: SyncSource, raw: Optional[dict], now: datetime) -> Order:
        async with self._uow_factory() as uow:
            closed = await PaymentDomainService(uow.order_repository).mark_closed(
                order,
                expected=OrderStatus.PROCESSING,
                source=source,
                raw=raw,
                now=now,
            )
        logger.info("order_closed", order_ref=closed.order_ref, source=source.value)
        return closed

    async def _release(self, order: Order, *, error: Optional[str] = None) -> Order:
        try:
            async with self._uow_factory() as uow:
                released = await PaymentDomainService(uow.order_repository).release(order, error=error)
        except ConcurrentClaimLost:
            logger.warning("order_release_lost", order_ref=order.order_ref)
            return await self._reload(order)
        logger.info("order_released", order_ref=released.order_ref, error=error)
        return released

    async def _reload(self, order: Order) -> Order:
        async with self._uow_factory(readonly=True) as uow:
            current = await uow.order_repository.get_by_order_ref(order.order_ref)
        return current or order


class ReconciliationSweeper:
    """Periodic backstop for lost notifications and abandoned orders."""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        reconciler: OrderReconciler,
        *,
        batch_size: int = 100,
        claim_lease_seconds: int = 300,
        clock: Clock = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._reconciler = reconciler
        self._batch_size = batch_size
        self._lease = timedelta(seconds=claim_lease_seconds)
        self._clock = clock

    async def sweep(self) -> SweepResult:
        bind_log_context(sweep_id=uuid.uuid4().hex[:12])
        now = self._clock()
        result = SweepResult()
        result.released_stale = await self._recover_stale_claims(now)

        async with self._uow_factory(readonly=True) as uow:
            expired = await uow.order_repository.list_expired_pending(now, limit=self._batch_size)
        result.selected = len(expired)
        logger.info("sweep_started", selected=result.selected, released_stale=result.released_stale)

        for order in expired:
            try:
                outcome = await self._reconciler.reconcile(order, source=SyncSource.SWEEP, close_abandoned=True)
            except ConcurrentClaimLost:
                logger.info("sweep_claim_lost", order_ref=order.order_ref)
                continue
            except Exception:
                logger.exception("sweep_order_failed", order_ref=order.order_ref)
                continue
            result.claimed += 1
            if outcome.is_terminal():
                result.processed += 1

        logger.info(
            "sweep_finished",
            selected=result.selected,
            claimed=result.claimed,
            processed=result.processed,
            released_stale=result.released_stale,
        )
        return result

    async def _recover_stale_claims(self, now: datetime) -> int:
        cutoff = now - self._lease
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.order_repository.list_stale_processing(cutoff, limit=self._batch_size)
        recovered = 0
        for order in stale:
            try:
                async with self._uow_factory() as uow:
                    await PaymentDomainService(uow.order_repository).recover_stale_claim(order, cutoff=cutoff)
            except ConcurrentClaimLost:
                continue
            logger.warning("stale_claim_recovered", order_ref=order.order_ref, processing_at=str(order.processing_at))
            recovered += 1
        return recovered
