"""payment tables

Revision ID: 4e1d9c7a2b10
Revises:
Create Date: 2026-10-18 10:12:05.418223
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4e1d9c7a2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PAYMENT_STATUS = sa.Enum(
    'CREATED', 'ATTEMPTED', 'PAID', 'FAILED', 'CANCELLED', 'REFUNDED', 'PARTIAL_REFUND',
    name='paymentstatus', native_enum=False, length=20,
)
RECEIPT_TYPE = sa.Enum(
    'PAYMENT_RECEIPT', 'REFUND_RECEIPT', 'CANCELLATION_RECEIPT',
    name='receipttype', native_enum=False, length=32,
)


def upgrade() -> None:
    op.create_table(
        'payment_orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('school_id', sa.String(length=64), nullable=False),
        sa.Column('gateway_order_id', sa.String(length=64), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=64), nullable=True),
        sa.Column('gateway_signature', sa.String(length=128), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('amount_refunded', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', PAYMENT_STATUS, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('receipt', sa.String(length=64), nullable=False),
        sa.Column('notes', sa.JSON(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('payment_method_details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('receipt'),
    )
    with op.batch_alter_table('payment_orders', schema=None) as batch_op:
        batch_op.create_index('ix_payment_orders_school_id', ['school_id'], unique=False)
        batch_op.create_index('ix_payment_orders_gateway_order_id', ['gateway_order_id'], unique=True)
        batch_op.create_index('ix_payment_orders_gateway_payment_id', ['gateway_payment_id'], unique=False)
        batch_op.create_index('ix_payment_orders_status', ['status'], unique=False)
        batch_op.create_index('ix_payment_orders_school_created', ['school_id', 'created_at'], unique=False)

    op.create_table(
        'receipt_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('payment_order_id', sa.String(length=36), nullable=False),
        sa.Column('receipt_type', RECEIPT_TYPE, nullable=False),
        sa.Column('receipt_number', sa.String(length=64), nullable=False),
        sa.Column('file_path', sa.String(length=512), nullable=False),
        sa.Column('file_url', sa.String(length=512), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=False),
        sa.Column('download_count', sa.Integer(), nullable=False),
        sa.Column('generated_at', sa.DateTime(), nullable=False),
        sa.Column('last_downloaded_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(
            ['payment_order_id'], ['payment_orders.id'],
            name='fk_receipt_logs_payment_order_id', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('receipt_number'),
    )
    with op.batch_alter_table('receipt_logs', schema=None) as batch_op:
        batch_op.create_index('ix_receipt_logs_payment_order_id', ['payment_order_id'], unique=False)
        batch_op.create_index(
            'uq_receipt_logs_payment_receipt',
            ['payment_order_id'],
            unique=True,
            sqlite_where=sa.text("receipt_type = 'PAYMENT_RECEIPT'"),
            postgresql_where=sa.text("receipt_type = 'PAYMENT_RECEIPT'"),
        )

    op.create_table(
        'payment_webhooks',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('gateway_event_id', sa.String(length=128), nullable=False),
        sa.Column('event', sa.String(length=64), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=True),
        sa.Column('entity', sa.String(length=32), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('payment_webhooks', schema=None) as batch_op:
        batch_op.create_index('ix_payment_webhooks_gateway_event_id', ['gateway_event_id'], unique=True)
        batch_op.create_index('ix_payment_webhooks_event', ['event'], unique=False)
        batch_op.create_index(
            'ix_payment_webhooks_pending', ['processed', 'retry_count', 'created_at'], unique=False
        )


def downgrade() -> None:
    op.drop_table('payment_webhooks')
    op.drop_table('receipt_logs')
    op.drop_table('payment_orders')
