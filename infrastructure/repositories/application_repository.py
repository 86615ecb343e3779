"""
录取申请存储实现 - 使用SQLAlchemy实现协作方接口
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from domain.admission.store import ApplicationRecord, ApplicationStore
from infrastructure.models.application import ApplicationModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyApplicationStore(ApplicationStore):
    """申请存储的SQLAlchemy实现

    与订单状态迁移共享同一会话/事务：订单 PAID 与申请标记一起提交或一起回滚。
    申请缺失时只记录告警，不回滚已确认的资金状态。
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_user_id(self, user_id: str) -> Optional[ApplicationRecord]:
        result = await self.session.execute(
            select(ApplicationModel)
            .where(ApplicationModel.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return ApplicationRecord(
            user_id=model.user_id,
            status=model.status,
            payment_status=model.payment_status,
            payment_order_ref=model.payment_order_ref,
            payment_amount=Decimal(str(model.payment_amount)) if model.payment_amount is not None else None,
            paid_at=model.paid_at,
            enrolled_at=model.enrolled_at,
            refunded_at=model.refunded_at,
        )

    async def mark_paid(
        self,
        user_id: str,
        order_ref: str,
        amount: Decimal,
        paid_at: datetime,
    ) -> None:
        result = await self.session.execute(
            update(ApplicationModel)
            .where(ApplicationModel.user_id == user_id)
            .values(
                status="paid",
                payment_status="paid",
                payment_order_ref=order_ref,
                payment_amount=amount,
                paid_at=func.coalesce(ApplicationModel.paid_at, paid_at),
                enrolled_at=func.coalesce(ApplicationModel.enrolled_at, paid_at),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("application_missing_on_paid", user_id=user_id, order_ref=order_ref)
            return
        logger.info("application_marked_paid", user_id=user_id, order_ref=order_ref, amount=str(amount))

    async def mark_withdrawn(self, user_id: str, refunded_at: datetime) -> None:
        result = await self.session.execute(
            update(ApplicationModel)
            .where(ApplicationModel.user_id == user_id)
            .values(
                status="withdrawn",
                payment_status="refunded",
                refunded_at=func.coalesce(ApplicationModel.refunded_at, refunded_at),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("application_missing_on_withdrawn", user_id=user_id)
            return
        logger.info("application_marked_withdrawn", user_id=user_id)
