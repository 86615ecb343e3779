"""
支付订单领域服务 - 基于条件更新（compare-and-set）的状态迁移
"""
from typing import Any, Optional
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from .entity import ChannelHint, Order, OrderStatus, SyncSource, can_transition
from .repository import OrderRepository
from domain.common.exceptions import (
    BusinessException,
    DomainValidationException,
    InvalidRequestException,
)
from shared.codes.payment_codes import PaymentCode

# last_error 最大长度，仅用于诊断
_MAX_ERROR_LENGTH = 500


class OrderNotFoundException(BusinessException):
    """订单不存在"""
    def __init__(self, identifier: str):
        super().__init__(
            code=PaymentCode.ORDER_NOT_FOUND,
            message=f"Order not found: {identifier}",
            error_type="OrderNotFound",
            details={"identifier": identifier},
        )


class InvalidStateException(BusinessException):
    """当前状态不允许该操作"""
    def __init__(self, status: OrderStatus, action: str):
        super().__init__(
            code=PaymentCode.INVALID_STATE,
            message=f"Cannot {action} an order in status {status.value}",
            error_type="InvalidState",
            details={"status": status.value, "action": action},
            field="status",
        )


class RefundInProgressException(InvalidStateException):
    """已有退款请求在途（网关结果未落库）"""
    def __init__(self, order_ref: str, refund_ref: Optional[str]):
        BusinessException.__init__(
            self,
            code=PaymentCode.INVALID_STATE,
            message=f"A refund is already in progress for order {order_ref}",
            error_type="InvalidState",
            details={"order_ref": order_ref, "refund_ref": refund_ref},
            field="status",
        )


class InvalidAmountException(BusinessException):
    """退款金额超过订单金额"""
    def __init__(self, refund_amount: Decimal, available: Decimal):
        super().__init__(
            code=PaymentCode.INVALID_AMOUNT,
            message=f"Refund amount {refund_amount} exceeds order amount {available}",
            error_type="InvalidAmount",
            details={"refund_amount": str(refund_amount), "amount": str(available)},
            field="refund_amount",
        )


class RefundRejectedException(BusinessException):
    """网关拒绝退款，message 为网关原因"""
    def __init__(self, message: str, *, order_ref: str, provider_code: Optional[str] = None):
        super().__init__(
            code=PaymentCode.REFUND_REJECTED,
            message=message,
            error_type="RefundRejected",
            details={"order_ref": order_ref, "provider_code": provider_code},
        )


class ConcurrentClaimLost(BusinessException):
    """另一写入方已抢先完成迁移（预期情况，并非错误）"""
    def __init__(self, order_ref: str, expected: OrderStatus):
        super().__init__(
            code=PaymentCode.CLAIM_LOST,
            message=f"Order {order_ref} is no longer {expected.value}",
            error_type="ConcurrentClaimLost",
            details={"order_ref": order_ref, "expected": expected.value},
        )
        self.order_ref = order_ref
        self.expected = expected


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentDomainService:
    """
    订单领域服务 - 所有状态写入的唯一入口

    职责：
    1. 创建 PENDING 订单
    2. 校验迁移边是否在状态机内
    3. 以当前状态为条件执行更新，失败即 ConcurrentClaimLost
    4. 退款业务规则（仅 PAID 可退，金额不超过订单金额）
    """

    def __init__(self, order_repository: OrderRepository):
        self.order_repository = order_repository

    async def create_order(
        self,
        *,
        order_ref: str,
        user_id: str,
        amount: Decimal,
        window: timedelta,
        subject: Optional[str] = None,
        channel: ChannelHint = ChannelHint.DESKTOP,
        client_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """创建 PENDING 订单，expire_at = now + 支付窗口"""
        now = now or _now()
        order = Order(
            id=None,
            order_ref=order_ref,
            user_id=user_id,
            amount=amount,
            status=OrderStatus.PENDING,
            expire_at=now + window,
            created_at=now,
            updated_at=now,
            subject=subject,
            channel=channel,
            client_ip=client_ip,
        )
        return await self.order_repository.create(order)

    async def _transition(
        self,
        order: Order,
        expected: OrderStatus,
        target: OrderStatus,
        changes: dict[str, Any],
        *,
        processing_before: Optional[datetime] = None,
        refund_ref: Optional[str] = None,
        refund_unreserved: bool = False,
    ) -> Order:
        # PAID -> PAID 仅用于退款预留，不是状态机中的迁移
        if expected != target and not can_transition(expected, target):
            raise InvalidStateException(expected, f"move to {target.value}")
        updated = await self.order_repository.compare_and_set(
            order.order_ref,
            expected,
            target,
            changes,
            processing_before=processing_before,
            refund_ref=refund_ref,
            refund_unreserved=refund_unreserved,
        )
        if updated is None:
            raise ConcurrentClaimLost(order.order_ref, expected)
        return updated

    async def claim(self, order: Order, *, now: Optional[datetime] = None) -> Order:
        """PENDING -> PROCESSING，获得查询并处理该订单的独占权"""
        return await self._transition(
            order,
            OrderStatus.PENDING,
            OrderStatus.PROCESSING,
            {"processing_at": now or _now()},
        )

    async def release(self, order: Order, *, error: Optional[str] = None) -> Order:
        """PROCESSING -> PENDING，留待下次对账"""
        changes: dict[str, Any] = {"processing_at": None}
        if error:
            changes["last_error"] = error[:_MAX_ERROR_LENGTH]
        return await self._transition(order, OrderStatus.PROCESSING, OrderStatus.PENDING, changes)

    async def recover_stale_claim(self, order: Order, *, cutoff: datetime) -> Order:
        """回收锁定超时（处理进程崩溃）的订单"""
        return await self._transition(
            order,
            OrderStatus.PROCESSING,
            OrderStatus.PENDING,
            {"processing_at": None, "last_error": "claim lease expired"},
            processing_before=cutoff,
        )

    async def mark_paid(
        self,
        order: Order,
        *,
        expected: OrderStatus,
        transaction_id: str,
        source: SyncSource,
        raw: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """迁移到 PAID，记录网关交易号与支付时间"""
        if not transaction_id:
            raise DomainValidationException("缺少网关交易号", field="gateway_transaction_id")
        return await self._transition(
            order,
            expected,
            OrderStatus.PAID,
            {
                "gateway_transaction_id": transaction_id,
                "paid_at": now or _now(),
                "synced_by": source,
                "raw_notification": raw or {},
                "processing_at": None,
                "last_error": None,
            },
        )

    async def mark_closed(
        self,
        order: Order,
        *,
        expected: OrderStatus,
        source: SyncSource,
        raw: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """迁移到 CLOSED"""
        changes: dict[str, Any] = {
            "closed_at": now or _now(),
            "synced_by": source,
            "processing_at": None,
        }
        if raw:
            changes["raw_notification"] = raw
        return await self._transition(order, expected, OrderStatus.CLOSED, changes)

    def check_refundable(self, order: Order, refund_amount: Decimal) -> None:
        """
        退款前置校验

        业务规则：
        1. 只有 PAID 状态可以退款
        2. 同一订单同时只能有一笔退款在途
        3. 退款金额必须大于0且不超过订单金额
        """
        if not order.can_refund():
            raise InvalidStateException(order.status, "refund")
        if order.refund_ref:
            raise RefundInProgressException(order.order_ref, order.refund_ref)
        self._check_refund_amount(order, refund_amount)

    def _check_refund_amount(self, order: Order, refund_amount: Decimal) -> None:
        if refund_amount <= 0:
            raise InvalidRequestException(
                f"Refund amount must be positive: {refund_amount}",
                field="refund_amount",
            )
        if refund_amount > order.amount:
            raise InvalidAmountException(refund_amount, order.amount)

    async def reserve_refund(self, order: Order, *, refund_ref: str, refund_amount: Decimal) -> Order:
        """调用网关前预留退款：PAID 且无预留时写入 refund_ref，并发退款只有一方成功"""
        self.check_refundable(order, refund_amount)
        return await self._transition(
            order,
            OrderStatus.PAID,
            OrderStatus.PAID,
            {"refund_ref": refund_ref},
            refund_unreserved=True,
        )

    async def release_refund(self, order: Order, *, refund_ref: str) -> Order:
        """网关明确拒绝退款后撤销预留"""
        return await self._transition(
            order,
            OrderStatus.PAID,
            OrderStatus.PAID,
            {"refund_ref": None},
            refund_ref=refund_ref,
        )

    async def apply_refund(
        self,
        order: Order,
        *,
        refund_ref: str,
        refund_amount: Decimal,
        reason: Optional[str] = None,
        operator_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """网关退款成功后写入 REFUNDED / PARTIAL_REFUNDED（要求持有同一预留号）"""
        self._check_refund_amount(order, refund_amount)
        target = OrderStatus.REFUNDED if order.is_full_refund(refund_amount) else OrderStatus.PARTIAL_REFUNDED
        return await self._transition(
            order,
            OrderStatus.PAID,
            target,
            {
                "refund_amount": refund_amount,
                "refund_reason": reason,
                "refund_by": operator_id or "system",
                "refunded_at": now or _now(),
            },
            refund_ref=refund_ref,
        )
