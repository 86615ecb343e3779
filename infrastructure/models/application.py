"""
录取申请数据库模型（协作方的表，支付核心只读写缴费相关字段）
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime
from datetime import datetime, timezone

from .base import Base


class ApplicationModel(Base):
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), unique=True, nullable=False, comment="申请人用户ID")
    status = Column(String(32), nullable=False, default="submitted", comment="申请状态")

    # 缴费信息
    payment_status = Column(String(32), nullable=True, comment="缴费状态: paid/refunded")
    payment_order_ref = Column(String(64), nullable=True, comment="缴费订单号")
    payment_amount = Column(Numeric(precision=15, scale=2), nullable=True, comment="缴费金额")
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="缴费时间")
    enrolled_at = Column(DateTime(timezone=True), nullable=True, comment="入学确认时间")
    refunded_at = Column(DateTime(timezone=True), nullable=True, comment="退费时间")

    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self):
        return f"<ApplicationModel(user_id='{self.user_id}', status='{self.status}')>"
