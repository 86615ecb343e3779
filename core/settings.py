"""
Payment-related settings using pydantic-settings v2 with nested env keys.

This module is isolated so core.config.Settings stays focused on the app shell.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    # Seconds; every gateway call sits on a user-facing or scheduled path
    connect: float = 3.0
    read: float = 10.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    # Applies to idempotent trade queries only
    max: int = 1
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class AlipaySettings(BaseModel):
    app_id: Optional[str] = None
    # Either a filesystem path or the key material itself
    private_key_path: Optional[str] = None
    alipay_public_key_path: Optional[str] = None
    gateway: str = "https://openapi.alipay.com/gateway.do"
    sign_type: str = "RSA2"
    notify_url: Optional[str] = None
    return_url: Optional[str] = None


class OrderSettings(BaseModel):
    payment_window_minutes: int = 30
    default_subject: str = "Tuition Payment"
    amount_epsilon: Decimal = Decimal("0.01")
    default_refund_reason: str = "Refund requested by applicant"


class SweepSettings(BaseModel):
    interval_seconds: int = 120
    batch_size: int = 100
    # PROCESSING claims older than this are considered abandoned
    claim_lease_seconds: int = 300


class PaymentSettings(BaseSettings):
    default_provider: str = Field(default="alipay", validation_alias="PAYMENT__DEFAULT_PROVIDER")
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    order: OrderSettings = Field(default_factory=OrderSettings)
    sweep: SweepSettings = Field(default_factory=SweepSettings)

    alipay: AlipaySettings = Field(default_factory=AlipaySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
