"""Order and refund reference generation.

References are shared with the gateway as out_trade_no / out_request_no,
so they stay within Alipay's 64-character alphanumeric-plus-underscore limit.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
import secrets


def _millis(now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    return int(now.timestamp() * 1000)


def generate_order_ref(now: Optional[datetime] = None) -> str:
    return f"ord_{_millis(now)}_{secrets.token_hex(4)}"


def generate_refund_ref(now: Optional[datetime] = None) -> str:
    # Fresh per attempt; never reused across refunds of the same order
    return f"ref_{_millis(now)}_{secrets.token_hex(4)}"
