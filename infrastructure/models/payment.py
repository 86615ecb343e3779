"""
支付订单数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON, Index
)
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    """
    支付订单数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Order 中
    """
    __tablename__ = "orders"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 订单信息
    order_ref = Column(String(64), unique=True, nullable=False, comment="外部订单号（网关 out_trade_no）")
    user_id = Column(String(100), nullable=False, comment="申请人用户ID")
    subject = Column(String(256), nullable=True, comment="订单标题")
    channel = Column(String(20), nullable=False, default="desktop", comment="支付渠道: desktop/mobile")
    client_ip = Column(String(64), nullable=True, comment="下单客户端IP")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="订单金额")

    # 状态
    status = Column(
        String(32),
        nullable=False,
        default="PENDING",
        comment="订单状态: PENDING/PROCESSING/PAID/CLOSED/PARTIAL_REFUNDED/REFUNDED"
    )
    synced_by = Column(String(16), nullable=True, comment="终态写入来源: webhook/sweep/poll")

    # 网关信息
    gateway_transaction_id = Column(String(64), nullable=True, index=True, comment="网关交易号")
    raw_notification = Column(JSON, nullable=True, comment="最近一次已验签的网关报文")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    expire_at = Column(DateTime(timezone=True), nullable=False, comment="支付窗口结束时间")
    processing_at = Column(DateTime(timezone=True), nullable=True, comment="对账锁定时间")
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    closed_at = Column(DateTime(timezone=True), nullable=True, comment="关闭时间")

    # 退款信息
    refunded_at = Column(DateTime(timezone=True), nullable=True, comment="退款时间")
    refund_ref = Column(String(64), nullable=True, unique=True, comment="退款请求号")
    refund_amount = Column(Numeric(precision=15, scale=2), nullable=True, comment="退款金额")
    refund_reason = Column(String(256), nullable=True, comment="退款原因")
    refund_by = Column(String(100), nullable=True, comment="退款操作人")

    # 诊断信息，不参与业务判断
    last_error = Column(Text, nullable=True, comment="最近一次错误")

    # 索引
    __table_args__ = (
        Index("ix_orders_status_expire_at", "status", "expire_at"),
        Index("ix_orders_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<OrderModel(id={self.id}, order_ref='{self.order_ref}', "
            f"user_id='{self.user_id}', amount={self.amount}, status='{self.status}')>"
        )
