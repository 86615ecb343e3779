"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Order lifecycle (21xxx)
    ORDER_NOT_FOUND = 21000
    INVALID_STATE = 21001
    INVALID_AMOUNT = 21002
    AMOUNT_MISMATCH = 21003
    CLAIM_LOST = 21004
    REFUND_REJECTED = 21005

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003


# Provider trade status -> internal TradeStatus value
PROVIDER_STATUS_TO_INTERNAL = {
    "alipay": {
        # Per trade_status
        "WAIT_BUYER_PAY": "WAIT_PAYMENT",
        "TRADE_SUCCESS": "SUCCESS",
        "TRADE_FINISHED": "SUCCESS",
        "TRADE_CLOSED": "CLOSED",
    },
}

# Alipay sub_code returned by alipay.trade.query when the trade was never created
ALIPAY_TRADE_NOT_EXIST = "ACQ.TRADE_NOT_EXIST"
