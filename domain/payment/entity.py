"""
支付订单领域实体 - 订单聚合根与状态机
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from enum import Enum

from domain.common.exceptions import DomainValidationException


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "PENDING"                    # 待支付
    PROCESSING = "PROCESSING"              # 对账锁定中（短暂）
    PAID = "PAID"                          # 已支付
    CLOSED = "CLOSED"                      # 已关闭
    PARTIAL_REFUNDED = "PARTIAL_REFUNDED"  # 部分退款
    REFUNDED = "REFUNDED"                  # 全额退款


class TradeStatus(str, Enum):
    """网关交易状态（边界处解析后的标签）"""
    SUCCESS = "SUCCESS"
    CLOSED = "CLOSED"
    WAIT_PAYMENT = "WAIT_PAYMENT"
    NOT_FOUND = "NOT_FOUND"


class SyncSource(str, Enum):
    """写入终态的来源"""
    WEBHOOK = "webhook"
    SWEEP = "sweep"
    POLL = "poll"


class ChannelHint(str, Enum):
    """支付渠道提示：桌面浏览器或移动端/内嵌浏览器"""
    DESKTOP = "desktop"
    MOBILE = "mobile"


# 状态机：允许的迁移边
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.PAID, OrderStatus.CLOSED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.CLOSED}),
    OrderStatus.PAID: frozenset({OrderStatus.PARTIAL_REFUNDED, OrderStatus.REFUNDED}),
    OrderStatus.CLOSED: frozenset(),
    OrderStatus.PARTIAL_REFUNDED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.CLOSED,
    OrderStatus.PARTIAL_REFUNDED,
    OrderStatus.REFUNDED,
})

# 持有网关交易号的状态
SETTLED_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.PARTIAL_REFUNDED,
    OrderStatus.REFUNDED,
})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """判断状态迁移是否在状态机允许范围内"""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Order:
    """
    支付订单聚合根 - 管理一次缴费的生命周期

    业务规则：
    1. order_ref 全局唯一且不可复用
    2. 金额必须大于0，且最多两位小数
    3. 状态只能沿状态机单向迁移（PROCESSING 回滚到 PENDING 除外）
    4. 当且仅当状态为 PAID/PARTIAL_REFUNDED/REFUNDED 时存在网关交易号
    5. 退款金额不能超过订单金额
    """

    id: Optional[int]
    order_ref: str
    user_id: str
    amount: Decimal
    status: OrderStatus
    expire_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    subject: Optional[str] = None
    channel: ChannelHint = ChannelHint.DESKTOP
    client_ip: Optional[str] = None

    gateway_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    synced_by: Optional[SyncSource] = None

    # 退款相关
    refunded_at: Optional[datetime] = None
    refund_ref: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None
    refund_by: Optional[str] = None

    last_error: Optional[str] = None
    raw_notification: dict = field(default_factory=dict)

    def __post_init__(self):
        """初始化后验证"""
        self._validate_amount()
        self._validate_transaction_id()
        self._validate_refund_amount()
        self._normalize_timestamps()
        if self.raw_notification is None:
            self.raw_notification = {}

    def _validate_amount(self) -> None:
        """业务规则：金额必须大于0且精确到分"""
        if self.amount <= 0:
            raise DomainValidationException(
                f"订单金额必须大于0: {self.amount}",
                field="amount"
            )
        if self.amount.as_tuple().exponent < -2:
            raise DomainValidationException(
                f"订单金额最多两位小数: {self.amount}",
                field="amount"
            )

    def _validate_transaction_id(self) -> None:
        """业务规则：网关交易号与已支付类状态同时存在"""
        has_txn = bool(self.gateway_transaction_id)
        if has_txn != (self.status in SETTLED_STATUSES):
            raise DomainValidationException(
                f"状态 {self.status.value} 与网关交易号不一致",
                field="gateway_transaction_id"
            )

    def _validate_refund_amount(self) -> None:
        if self.refund_amount is not None and self.refund_amount > self.amount:
            raise DomainValidationException(
                f"退款金额 {self.refund_amount} 超过订单金额 {self.amount}",
                field="refund_amount"
            )

    def _normalize_timestamps(self) -> None:
        """规范化所有时间戳为 UTC"""
        self.expire_at = _ensure_utc(self.expire_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.paid_at = _ensure_utc(self.paid_at)
        self.closed_at = _ensure_utc(self.closed_at)
        self.processing_at = _ensure_utc(self.processing_at)
        self.refunded_at = _ensure_utc(self.refunded_at)

    def is_terminal(self) -> bool:
        """检查是否为终态"""
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """支付窗口是否已结束"""
        now = _ensure_utc(now) or datetime.now(timezone.utc)
        return self.expire_at < now

    def amount_matches(self, reported: Decimal, epsilon: Decimal) -> bool:
        """网关上报金额与本地金额是否一致（允许极小误差）"""
        return abs(Decimal(reported) - self.amount) <= epsilon

    def can_refund(self) -> bool:
        """只有 PAID 状态的订单可以退款"""
        return self.status == OrderStatus.PAID

    def is_full_refund(self, refund_amount: Decimal) -> bool:
        return refund_amount >= self.amount
