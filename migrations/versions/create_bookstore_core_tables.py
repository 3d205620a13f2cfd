"""create bookstore core tables

Revision ID: create_bookstore_core_tables
Revises: 
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_bookstore_core_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # 订单号计数器
    op.create_table(
        'order_number_sequences',
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('last_value', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('day')
    )

    # 订单表（users / addresses / books / warehouses 由上游服务维护，不建外键）
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_number', sa.String(32), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('address_id', sa.Uuid(), nullable=False),
        sa.Column('promotion_id', sa.Uuid(), nullable=True),
        sa.Column('warehouse_id', sa.Uuid(), nullable=True),
        sa.Column('subtotal', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('shipping_fee', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('cod_fee', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('discount_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('tax_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('payment_method', sa.String(20), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('tracking_number', sa.String(100), nullable=True),
        sa.Column('estimated_delivery_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('customer_note', sa.Text(), nullable=True),
        sa.Column('admin_note', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number')
    )
    op.create_index('idx_orders_user_id', 'orders', ['user_id'])
    op.create_index('idx_orders_status', 'orders', ['status'])
    op.create_index('idx_orders_created_at', 'orders', ['created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('book_id', sa.Uuid(), nullable=False),
        sa.Column('warehouse_id', sa.Uuid(), nullable=True),
        sa.Column('book_title', sa.String(500), nullable=False),
        sa.Column('book_slug', sa.String(500), nullable=False),
        sa.Column('book_cover_url', sa.Text(), nullable=True),
        sa.Column('author_name', sa.String(255), nullable=True),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('subtotal', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE')
    )
    op.create_index('idx_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('idx_order_items_book_id', 'order_items', ['book_id'])

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('from_status', sa.String(20), nullable=True),
        sa.Column('to_status', sa.String(20), nullable=False),
        sa.Column('changed_by', sa.Uuid(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE')
    )
    op.create_index('idx_order_status_history_order_id', 'order_status_history', ['order_id'])

    # 库存表
    op.create_table(
        'inventory_rows',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('warehouse_id', sa.Uuid(), nullable=False),
        sa.Column('book_id', sa.Uuid(), nullable=False),
        sa.Column('available', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_updated_by', sa.Uuid(), nullable=True),
        sa.Column('last_reason', sa.String(100), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('warehouse_id', 'book_id', name='uq_inventory_warehouse_book'),
        sa.CheckConstraint('available >= 0', name='ck_inventory_available'),
        sa.CheckConstraint('reserved >= 0', name='ck_inventory_reserved')
    )
    op.create_index('idx_inventory_rows_book_id', 'inventory_rows', ['book_id'])

    # 支付表
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('gateway', sa.String(20), nullable=False),
        sa.Column('transaction_id', sa.String(100), nullable=True),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False, server_default='VND'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_code', sa.String(20), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('gateway_signature', sa.Text(), nullable=True),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('payment_url', sa.Text(), nullable=True),
        sa.Column('refund_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('initiated_at', sa.DateTime(), nullable=False),
        sa.Column('processing_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], )
    )
    op.create_index('idx_payment_transactions_order_id', 'payment_transactions', ['order_id'])
    op.create_index('idx_payment_transactions_status', 'payment_transactions', ['status'])
    # 每个订单最多一笔成功支付
    op.create_index(
        'uq_payment_success_per_order', 'payment_transactions', ['order_id'], unique=True,
        postgresql_where=sa.text("status = 'success'"),
        sqlite_where=sa.text("status = 'success'")
    )

    op.create_table(
        'payment_webhook_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('payment_transaction_id', sa.Uuid(), nullable=True),
        sa.Column('order_id', sa.Uuid(), nullable=True),
        sa.Column('gateway', sa.String(20), nullable=False),
        sa.Column('webhook_event', sa.String(50), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(100), nullable=True),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('body', sa.JSON(), nullable=False),
        sa.Column('signature', sa.Text(), nullable=True),
        sa.Column('is_valid', sa.Boolean(), nullable=True),
        sa.Column('is_processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_duplicate', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['payment_transaction_id'], ['payment_transactions.id'], )
    )
    op.create_index('idx_payment_webhook_logs_payment_id', 'payment_webhook_logs', ['payment_transaction_id'])
    # 回调幂等：同一事件只允许一条已处理记录
    op.create_index(
        'uq_webhook_processed', 'payment_webhook_logs', ['gateway', 'webhook_event', 'gateway_transaction_id'], unique=True,
        postgresql_where=sa.text('is_processed'),
        sqlite_where=sa.text('is_processed = 1')
    )

    # 退款表
    op.create_table(
        'refund_requests',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('payment_transaction_id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('requested_by', sa.Uuid(), nullable=False),
        sa.Column('requested_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('proof_images', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('approved_by', sa.Uuid(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('rejected_by', sa.Uuid(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('gateway_refund_id', sa.String(100), nullable=True),
        sa.Column('gateway_refund_response', sa.JSON(), nullable=True),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('processing_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['payment_transaction_id'], ['payment_transactions.id'], ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], )
    )
    op.create_index('idx_refund_requests_payment_id', 'refund_requests', ['payment_transaction_id'])
    op.create_index('idx_refund_requests_status', 'refund_requests', ['status'])
    op.create_index('idx_refund_requests_gateway_refund_id', 'refund_requests', ['gateway_refund_id'])

    # 管理员操作审计
    op.create_table(
        'admin_audit_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('admin_id', sa.Uuid(), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_admin_audit_entity', 'admin_audit_logs', ['entity_type', 'entity_id'])


def downgrade():
    # 删除索引
    op.drop_index('idx_admin_audit_entity')
    op.drop_index('idx_refund_requests_gateway_refund_id')
    op.drop_index('idx_refund_requests_status')
    op.drop_index('idx_refund_requests_payment_id')
    op.drop_index('uq_webhook_processed')
    op.drop_index('idx_payment_webhook_logs_payment_id')
    op.drop_index('uq_payment_success_per_order')
    op.drop_index('idx_payment_transactions_status')
    op.drop_index('idx_payment_transactions_order_id')
    op.drop_index('idx_inventory_rows_book_id')
    op.drop_index('idx_order_status_history_order_id')
    op.drop_index('idx_order_items_book_id')
    op.drop_index('idx_order_items_order_id')
    op.drop_index('idx_orders_created_at')
    op.drop_index('idx_orders_status')
    op.drop_index('idx_orders_user_id')

    # 删除表
    op.drop_table('admin_audit_logs')
    op.drop_table('refund_requests')
    op.drop_table('payment_webhook_logs')
    op.drop_table('payment_transactions')
    op.drop_table('inventory_rows')
    op.drop_table('order_status_history')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('order_number_sequences')
