"""
订单仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import ChannelHint, Order, OrderStatus, SyncSource
from domain.payment.repository import OrderRepository
from infrastructure.models.payment import OrderModel
from core.logging_config import get_logger


logger = get_logger(__name__)


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现

    compare_and_set 对应 UPDATE ... WHERE order_ref = :ref AND status = :expected，
    以受影响行数判断是否抢到本次迁移。
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            order_ref=model.order_ref,
            user_id=model.user_id,
            amount=Decimal(str(model.amount)),
            status=OrderStatus(model.status),
            expire_at=model.expire_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            subject=model.subject,
            channel=ChannelHint(model.channel),
            client_ip=model.client_ip,
            gateway_transaction_id=model.gateway_transaction_id,
            paid_at=model.paid_at,
            closed_at=model.closed_at,
            processing_at=model.processing_at,
            synced_by=SyncSource(model.synced_by) if model.synced_by else None,
            refunded_at=model.refunded_at,
            refund_ref=model.refund_ref,
            refund_amount=Decimal(str(model.refund_amount)) if model.refund_amount is not None else None,
            refund_reason=model.refund_reason,
            refund_by=model.refund_by,
            last_error=model.last_error,
            raw_notification=model.raw_notification or {},
        )

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型（仅用于创建）"""
        return OrderModel(
            id=entity.id,
            order_ref=entity.order_ref,
            user_id=entity.user_id,
            amount=entity.amount,
            status=entity.status.value,
            expire_at=entity.expire_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            subject=entity.subject,
            channel=entity.channel.value,
            client_ip=entity.client_ip,
            raw_notification=entity.raw_notification or None,
        )

    async def create(self, order: Order) -> Order:
        """创建订单记录"""
        try:
            db_order = self._to_model(order)
            self.session.add(db_order)
            await self.session.flush()
            await self.session.refresh(db_order)
        except IntegrityError as e:
            if "order_ref" in str(e).lower():
                logger.warning("order_create_conflict", order_ref=order.order_ref)
                raise DomainValidationException(
                    f"订单号已存在: {order.order_ref}",
                    field="order_ref"
                ) from e
            raise
        logger.info(
            "order_created",
            order_id=db_order.id,
            order_ref=db_order.order_ref,
            user_id=db_order.user_id,
            amount=str(db_order.amount),
        )
        return self._to_entity(db_order)

    async def _fetch_one(self, *criteria) -> Optional[OrderModel]:
        result = await self.session.execute(
            select(OrderModel)
            .where(*criteria)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_order_ref(self, order_ref: str) -> Optional[Order]:
        """根据外部订单号获取订单"""
        db_order = await self._fetch_one(OrderModel.order_ref == order_ref)
        return self._to_entity(db_order) if db_order else None

    async def get_latest_by_user(
        self,
        user_id: str,
        status: Optional[OrderStatus] = None
    ) -> Optional[Order]:
        """获取用户最近创建的订单"""
        query = select(OrderModel).where(OrderModel.user_id == user_id)
        if status:
            query = query.where(OrderModel.status == status.value)
        query = query.order_by(OrderModel.created_at.desc(), OrderModel.id.desc()).limit(1)

        result = await self.session.execute(query.execution_options(populate_existing=True))
        db_order = result.scalars().first()
        return self._to_entity(db_order) if db_order else None

    async def list_expired_pending(self, now: datetime, limit: int = 100) -> List[Order]:
        """获取支付窗口已过仍为 PENDING 的订单"""
        result = await self.session.execute(
            select(OrderModel)
            .where(
                OrderModel.status == OrderStatus.PENDING.value,
                OrderModel.expire_at < now,
            )
            .order_by(OrderModel.expire_at.asc())
            .limit(limit)
        )
        return [self._to_entity(o) for o in result.scalars().all()]

    async def list_stale_processing(self, cutoff: datetime, limit: int = 100) -> List[Order]:
        """获取锁定超时的 PROCESSING 订单"""
        result = await self.session.execute(
            select(OrderModel)
            .where(
                OrderModel.status == OrderStatus.PROCESSING.value,
                OrderModel.processing_at < cutoff,
            )
            .order_by(OrderModel.processing_at.asc())
            .limit(limit)
        )
        return [self._to_entity(o) for o in result.scalars().all()]

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
        """条件更新订单状态"""
        values = {key: _column_value(value) for key, value in (changes or {}).items()}
        values["status"] = target.value
        values["updated_at"] = datetime.now(timezone.utc)

        stmt = update(OrderModel).where(
            OrderModel.order_ref == order_ref,
            OrderModel.status == expected.value,
        )
        if processing_before is not None:
            stmt = stmt.where(OrderModel.processing_at < processing_before)
        if refund_ref is not None:
            stmt = stmt.where(OrderModel.refund_ref == refund_ref)
        if refund_unreserved:
            stmt = stmt.where(OrderModel.refund_ref.is_(None))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            logger.info(
                "order_transition_lost",
                order_ref=order_ref,
                expected=expected.value,
                target=target.value,
            )
            return None

        logger.info(
            "order_transitioned",
            order_ref=order_ref,
            from_status=expected.value,
            to_status=target.value,
        )
        return await self.get_by_order_ref(order_ref)
