"""
Payment gateway factory.

Only Alipay is wired for tuition payments; the provider name comes from
`PAYMENT__DEFAULT_PROVIDER` unless given explicitly.
"""
from __future__ import annotations

from typing import Optional

from core.logging_config import get_logger
from core.settings import payment_settings
from application.ports.payment_gateway import PaymentGateway


logger = get_logger(__name__)

_ALIPAY_ALIASES = {"alipay", "ali"}


def get_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    name = (provider or payment_settings.default_provider).lower()
    if name not in _ALIPAY_ALIASES:
        raise ValueError(f"Unsupported payment provider: {name}")

    from .alipay_client import AlipayClient

    gateway = AlipayClient(payment_settings.alipay)
    logger.info("payment_gateway_ready", provider=gateway.provider, gateway_url=payment_settings.alipay.gateway)
    return gateway
