"""
录取申请协作方接口 - 支付核心只依赖“读取申请”和“标记已缴费/已退出”两个操作
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass
class ApplicationRecord:
    """申请记录中与缴费相关的快照"""

    user_id: str
    status: str
    payment_status: Optional[str] = None
    payment_order_ref: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    enrolled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class ApplicationStore(ABC):
    """申请存储抽象接口

    mark_paid / mark_withdrawn 对同一订单重复调用必须安全（幂等）。
    """

    @abstractmethod
    async def get_by_user_id(self, user_id: str) -> Optional[ApplicationRecord]:
        """根据用户ID读取申请"""
        pass

    @abstractmethod
    async def mark_paid(
        self,
        user_id: str,
        order_ref: str,
        amount: Decimal,
        paid_at: datetime,
    ) -> None:
        """标记申请已缴费（入学）"""
        pass

    @abstractmethod
    async def mark_withdrawn(self, user_id: str, refunded_at: datetime) -> None:
        """标记申请已退费退出"""
        pass
