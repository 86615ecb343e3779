"""
Celery tasks for payment reconciliation.
"""
from __future__ import annotations

import asyncio

from celery import shared_task

from application.services.reconciliation_service import OrderReconciler, ReconciliationSweeper
from core.config import settings
from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.database import build_engine, build_session_factory
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import uow_factory_for
from ..utils.base_task import BaseTask


logger = get_logger(__name__)


async def run_sweep() -> dict[str, int]:
    # asyncio.run creates a fresh loop per task, so the engine must not outlive it
    engine = build_engine(settings.database.url, echo=settings.database.echo)
    try:
        uow_factory = uow_factory_for(build_session_factory(engine))
        reconciler = OrderReconciler(
            uow_factory,
            get_payment_gateway(),
            amount_epsilon=payment_settings.order.amount_epsilon,
        )
        sweeper = ReconciliationSweeper(
            uow_factory,
            reconciler,
            batch_size=payment_settings.sweep.batch_size,
            claim_lease_seconds=payment_settings.sweep.claim_lease_seconds,
        )
        result = await sweeper.sweep()
    finally:
        await engine.dispose()
    return {
        "processed": result.processed,
        "claimed": result.claimed,
        "released_stale": result.released_stale,
    }


@shared_task(name="payments.sweep_expired_orders", bind=True, base=BaseTask, ignore_result=False)
def sweep_expired_orders(self) -> dict[str, int]:
    """Run one reconciliation sweep.

    Per-order failures are isolated inside the sweep; no task-level retry,
    the next beat tick is the retry.
    """
    return asyncio.run(run_sweep())
