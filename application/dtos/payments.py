"""
Payment DTOs (Pydantic v2) used at application boundaries.

Gateway payloads are parsed into these fixed records at the adapter edge;
nothing past the adapter branches on raw provider strings.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.types import condecimal

from domain.payment.entity import ChannelHint, OrderStatus, TradeStatus


def _two_places(v: Decimal) -> Decimal:
    if v.as_tuple().exponent < -2:
        raise ValueError("amount must have at most two decimal places")
    return v


# ---- Requests ------------------------------------------------------------

class CreateOrderRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    # Range is checked by the service so a non-positive amount maps to InvalidRequest
    amount: Decimal
    subject: Optional[str] = Field(default=None, max_length=256)
    return_url: Optional[str] = Field(default=None, max_length=500)
    channel_hint: ChannelHint = ChannelHint.DESKTOP

    _amount_places = field_validator("amount")(_two_places)


class PollStatusRequest(BaseModel):
    order_ref: Optional[str] = None
    user_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_identifier(self):
        if not (self.order_ref or self.user_id):
            raise ValueError("order_ref or user_id is required")
        return self


class RefundOrderRequest(BaseModel):
    order_ref: str = Field(min_length=1)
    refund_amount: condecimal(gt=0)  # type: ignore[valid-type]
    reason: Optional[str] = Field(default=None, max_length=256)
    operator_id: Optional[str] = Field(default=None, max_length=100)

    _refund_places = field_validator("refund_amount")(_two_places)


# ---- Responses -----------------------------------------------------------

class CreateOrderResult(BaseModel):
    pay_url: str
    order_ref: str


class OrderStatusView(BaseModel):
    order_ref: str
    status: OrderStatus
    amount: Decimal
    expire_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    gateway_transaction_id: Optional[str] = None


class RefundOrderResult(BaseModel):
    refund_ref: str
    order_ref: str
    refund_amount: Decimal
    status: OrderStatus


class SweepResult(BaseModel):
    selected: int = 0
    claimed: int = 0
    processed: int = 0
    released_stale: int = 0


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway.

    `accepted=False` asks the gateway to redeliver (signature/amount errors).
    """
    accepted: bool
    reason: Optional[str] = None

    @property
    def token(self) -> str:
        return "success" if self.accepted else "fail"


# ---- Gateway records -----------------------------------------------------

class CreatePaymentIntent(BaseModel):
    order_ref: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    subject: str
    return_url: Optional[str] = None
    channel_hint: ChannelHint = ChannelHint.DESKTOP
    timeout_minutes: int = 30


class TradeQueryResult(BaseModel):
    found: bool
    trade_status: TradeStatus
    gateway_transaction_id: Optional[str] = None
    total_amount: Optional[Decimal] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class RefundTradeRequest(BaseModel):
    order_ref: str
    refund_ref: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    reason: Optional[str] = None


class RefundTradeResult(BaseModel):
    success: bool
    message: str = ""
    provider_code: Optional[str] = None


class VerifiedNotification(BaseModel):
    """Fields of an inbound notification whose signature has been verified."""
    order_ref: str
    trade_status: Optional[TradeStatus] = None
    gateway_transaction_id: Optional[str] = None
    total_amount: Optional[Decimal] = None
    provider: str
    data: dict[str, Any]
    raw_body: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)
