"""
订单仓储接口 - 定义订单数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, List

from .entity import Order, OrderStatus


class OrderRepository(ABC):
    """订单仓储抽象接口 - 只定义能做什么，不管怎么做

    所有状态写入都必须通过 compare_and_set，以当前状态作为条件，
    避免多个写入方（回调、巡检、轮询、退款）之间的更新丢失。
    """

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """创建订单记录"""
        pass

    @abstractmethod
    async def get_by_order_ref(self, order_ref: str) -> Optional[Order]:
        """根据外部订单号获取订单"""
        pass

    @abstractmethod
    async def get_latest_by_user(
        self,
        user_id: str,
        status: Optional[OrderStatus] = None
    ) -> Optional[Order]:
        """获取用户最近创建的订单（可按状态过滤）"""
        pass

    @abstractmethod
    async def list_expired_pending(self, now: datetime, limit: int = 100) -> List[Order]:
        """获取支付窗口已过仍为 PENDING 的订单（按过期时间升序）"""
        pass

    @abstractmethod
    async def list_stale_processing(self, cutoff: datetime, limit: int = 100) -> List[Order]:
        """获取锁定时间早于 cutoff 的 PROCESSING 订单"""
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        order_ref: str,
        expected: OrderStatus,
        target: OrderStatus,
        changes: Optional[dict[str, Any]] = None,
        *,
        processing_before: Optional[datetime] = None,
        refund_ref: Optional[str] = None,
        refund_unreserved: bool = False,
    ) -> Optional[Order]:
        """条件更新：仅当当前状态等于 expected 时迁移到 target

        返回更新后的订单；条件不满足（被其他写入方抢先）时返回 None。
        processing_before 额外要求 processing_at 早于该时间（用于回收过期锁）。
        refund_ref 要求当前退款预留号等于该值；refund_unreserved 要求尚无退款预留。
        """
        pass
