"""create_points_and_orders_tables

Revision ID: 3f2a9c1d7b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

HISTORY_TYPES = ('purchase', 'usage', 'refund', 'bonus', 'rollover', 'expiry')
ORDER_STATUSES = ('pending', 'processing', 'completed', 'failed')


def upgrade() -> None:
    """Upgrade schema - points ledger, provider sites and orders."""

    op.create_table(
        'points_balances',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('current_points', sa.Integer(), nullable=False),
        sa.Column('total_purchased', sa.Integer(), nullable=False),
        sa.Column('total_used', sa.Integer(), nullable=False),
        sa.Column('total_refunded', sa.Integer(), nullable=False),
        sa.Column('total_granted', sa.Integer(), nullable=False),
        sa.Column('total_expired', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('current_points >= 0', name='ck_points_balance_non_negative'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_points_balances_user_id', 'points_balances', ['user_id'], unique=True)

    op.create_table(
        'points_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('type', sa.Enum(*HISTORY_TYPES, name='points_history_type_enum'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('related_order_id', sa.Uuid(), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('amount <> 0', name='ck_points_history_amount_nonzero'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_points_history_user_id', 'points_history', ['user_id'])
    op.create_index('ix_points_history_related_order_id', 'points_history', ['related_order_id'])
    op.create_index('ix_points_history_user_created', 'points_history', ['user_id', 'created_at'])

    op.create_table(
        'provider_sites',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('site_id', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('cost', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_provider_sites_site_id', 'provider_sites', ['site_id'], unique=True)

    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('provider_site_id', sa.String(length=64), nullable=False),
        sa.Column('item_id', sa.String(), nullable=False),
        sa.Column('item_url', sa.Text(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('cost', sa.Integer(), nullable=False),
        sa.Column('is_redownload', sa.Boolean(), nullable=False),
        sa.Column('status', sa.Enum(*ORDER_STATUSES, name='order_status_enum'), nullable=False),
        sa.Column('provider_task_id', sa.String(), nullable=True),
        sa.Column('download_url', sa.Text(), nullable=True),
        sa.Column('file_name', sa.String(), nullable=True),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(length=64), nullable=True),
        sa.Column('submit_attempts', sa.Integer(), nullable=False),
        sa.Column('next_submit_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_polled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('cost >= 0', name='ck_order_cost_non_negative'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_user_item', 'orders', ['user_id', 'provider_site_id', 'item_id'])
    op.create_index('ix_orders_status_updated', 'orders', ['status', 'updated_at'])


def downgrade() -> None:
    """Downgrade schema - drop orders, sites and the points ledger."""
    op.drop_table('orders')
    op.drop_table('provider_sites')
    op.drop_table('points_history')
    op.drop_table('points_balances')
    sa.Enum(name='order_status_enum').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='points_history_type_enum').drop(op.get_bind(), checkfirst=True)
