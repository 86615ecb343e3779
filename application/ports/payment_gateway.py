"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from application.dtos.payments import (
    CreatePaymentIntent,
    RefundTradeRequest,
    RefundTradeResult,
    TradeQueryResult,
    VerifiedNotification,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the external payment provider.

    Transport or signing failures raise GatewayRequestError; a well-formed
    "trade does not exist" answer is a TradeQueryResult with NOT_FOUND.
    """

    provider: str

    async def create_payment_intent(self, req: CreatePaymentIntent) -> str: ...

    async def query_trade(self, order_ref: str) -> TradeQueryResult: ...

    async def close_trade(self, order_ref: str) -> None: ...

    async def refund_trade(self, req: RefundTradeRequest) -> RefundTradeResult: ...

    def verify_callback(self, headers: dict[str, Any], body: bytes) -> VerifiedNotification: ...
