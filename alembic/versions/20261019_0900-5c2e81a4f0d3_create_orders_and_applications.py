"""create_orders_and_applications

Revision ID: 5c2e81a4f0d3
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5c2e81a4f0d3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_ref', sa.String(length=64), nullable=False, comment='外部订单号（网关 out_trade_no）'),
        sa.Column('user_id', sa.String(length=100), nullable=False, comment='申请人用户ID'),
        sa.Column('subject', sa.String(length=256), nullable=True, comment='订单标题'),
        sa.Column('channel', sa.String(length=20), nullable=False, server_default='desktop', comment='支付渠道: desktop/mobile'),
        sa.Column('client_ip', sa.String(length=64), nullable=True, comment='下单客户端IP'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='订单金额'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='PENDING', comment='订单状态'),
        sa.Column('synced_by', sa.String(length=16), nullable=True, comment='终态写入来源: webhook/sweep/poll'),
        sa.Column('gateway_transaction_id', sa.String(length=64), nullable=True, comment='网关交易号'),
        sa.Column('raw_notification', sa.JSON(), nullable=True, comment='最近一次已验签的网关报文'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('expire_at', sa.DateTime(timezone=True), nullable=False, comment='支付窗口结束时间'),
        sa.Column('processing_at', sa.DateTime(timezone=True), nullable=True, comment='对账锁定时间'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付完成时间'),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True, comment='关闭时间'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True, comment='退款时间'),
        sa.Column('refund_ref', sa.String(length=64), nullable=True, comment='退款请求号'),
        sa.Column('refund_amount', sa.Numeric(precision=15, scale=2), nullable=True, comment='退款金额'),
        sa.Column('refund_reason', sa.String(length=256), nullable=True, comment='退款原因'),
        sa.Column('refund_by', sa.String(length=100), nullable=True, comment='退款操作人'),
        sa.Column('last_error', sa.Text(), nullable=True, comment='最近一次错误'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_ref'),
        sa.UniqueConstraint('refund_ref'),
        comment='缴费订单表，状态迁移均为条件更新'
    )
    op.create_index('ix_orders_id', 'orders', ['id'], unique=False)
    op.create_index('ix_orders_gateway_transaction_id', 'orders', ['gateway_transaction_id'], unique=False)
    op.create_index('ix_orders_status_expire_at', 'orders', ['status', 'expire_at'], unique=False)
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'], unique=False)

    op.create_table(
        'applications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False, comment='申请人用户ID'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='submitted', comment='申请状态'),
        sa.Column('payment_status', sa.String(length=32), nullable=True, comment='缴费状态: paid/refunded'),
        sa.Column('payment_order_ref', sa.String(length=64), nullable=True, comment='缴费订单号'),
        sa.Column('payment_amount', sa.Numeric(precision=15, scale=2), nullable=True, comment='缴费金额'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='缴费时间'),
        sa.Column('enrolled_at', sa.DateTime(timezone=True), nullable=True, comment='入学确认时间'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True, comment='退费时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )
    op.create_index('ix_applications_id', 'applications', ['id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_applications_id', table_name='applications')
    op.drop_table('applications')

    op.drop_index('ix_orders_user_created', table_name='orders')
    op.drop_index('ix_orders_status_expire_at', table_name='orders')
    op.drop_index('ix_orders_gateway_transaction_id', table_name='orders')
    op.drop_index('ix_orders_id', table_name='orders')
    op.drop_table('orders')
