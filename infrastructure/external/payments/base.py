"""
Base payment client implementing shared concerns: timeouts, retry, logging, mapping.

Concrete providers should subclass and implement provider-specific logic.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception

from core.logging_config import get_logger
from application.dtos.payments import (
    CreatePaymentIntent,
    RefundTradeRequest,
    RefundTradeResult,
    TradeQueryResult,
    VerifiedNotification,
)
from application.ports.payment_gateway import PaymentGateway
from domain.payment.entity import TradeStatus
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)

T = TypeVar("T")


class BasePaymentClient(PaymentGateway):
    provider: str = "base"

    # Exceptions worth retrying for idempotent calls (transport level only)
    transient_errors: tuple[type[BaseException], ...] = (TimeoutError, asyncio.TimeoutError, ConnectionError)

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 3.0, "read": 10.0, "total": 15.0}
        self._retry_cfg = retry or {"max": 1, "base": 0.2}

    @property
    def timeout_seconds(self) -> float:
        """Upper bound for a single gateway round trip."""
        return float(self._timeouts_cfg["total"])

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking SDK call in a worker thread under the total timeout."""
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_seconds)

    def _is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, self.transient_errors)

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception(self._is_transient),
            reraise=True,
        ):
            with attempt:
                return await fn()

    # Default implementations raise to force override where needed
    async def create_payment_intent(self, req: CreatePaymentIntent) -> str:  # type: ignore[override]
        raise NotImplementedError

    async def query_trade(self, order_ref: str) -> TradeQueryResult:  # type: ignore[override]
        raise NotImplementedError

    async def close_trade(self, order_ref: str) -> None:  # type: ignore[override]
        raise NotImplementedError

    async def refund_trade(self, req: RefundTradeRequest) -> RefundTradeResult:  # type: ignore[override]
        raise NotImplementedError

    def verify_callback(self, headers: dict[str, Any], body: bytes) -> VerifiedNotification:  # type: ignore[override]
        raise NotImplementedError

    # Helpers
    def _map_status(self, provider_status: str) -> Optional[TradeStatus]:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        internal = mapping.get(provider_status)
        return TradeStatus(internal) if internal else None

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
