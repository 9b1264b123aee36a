"""merchant subscriptions, balances, payment requests

Revision ID: 0001_merchant_subscriptions
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_merchant_subscriptions'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_REQUEST_WHERE = "status IN ('PENDING', 'CONFIRMED')"


def upgrade() -> None:
    op.create_table(
        'merchants',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('is_open', sa.Boolean(), nullable=False),
        sa.Column('is_manual_override', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_merchants')),
        sa.UniqueConstraint('code', name=op.f('uq_merchants_code')),
    )

    op.create_table(
        'menu_categories',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name=op.f('fk_menu_categories_merchant_id_merchants')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_menu_categories')),
    )
    op.create_index('ix_menu_categories_deleted_at', 'menu_categories', ['deleted_at'])

    op.create_table(
        'menu_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name=op.f('fk_menu_items_merchant_id_merchants')),
        sa.ForeignKeyConstraint(
            ['category_id'], ['menu_categories.id'],
            name=op.f('fk_menu_items_category_id_menu_categories'), ondelete='SET NULL',
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_menu_items')),
    )
    op.create_index('ix_menu_items_deleted_at', 'menu_items', ['deleted_at'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False),
        sa.Column('total', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name=op.f('fk_orders_merchant_id_merchants')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_orders')),
    )
    op.create_index('ix_orders_merchant_id', 'orders', ['merchant_id'])

    op.create_table(
        'merchant_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('trial_started_at', sa.DateTime(), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('suspend_reason', sa.String(length=255), nullable=True),
        sa.Column('suspended_at', sa.DateTime(), nullable=True),
        sa.Column('in_grace_period', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('grace_ends_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status != 'SUSPENDED' OR suspend_reason IS NOT NULL",
            name=op.f('ck_merchant_subscriptions_suspended_has_reason'),
        ),
        sa.ForeignKeyConstraint(
            ['merchant_id'], ['merchants.id'], name=op.f('fk_merchant_subscriptions_merchant_id_merchants'),
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_merchant_subscriptions')),
        sa.UniqueConstraint('merchant_id', name=op.f('uq_merchant_subscriptions_merchant_id')),
    )
    op.create_index('ix_merchant_subscriptions_status', 'merchant_subscriptions', ['status'])

    op.create_table(
        'subscription_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('actor', sa.String(length=16), nullable=False),
        sa.Column('old_type', sa.String(length=16), nullable=True),
        sa.Column('old_status', sa.String(length=16), nullable=True),
        sa.Column('new_type', sa.String(length=16), nullable=True),
        sa.Column('new_status', sa.String(length=16), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('balance_snapshot', sa.Numeric(14, 2), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name=op.f('fk_subscription_history_merchant_id_merchants')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_subscription_history')),
    )
    op.create_index('ix_subscription_history_merchant_created', 'subscription_history', ['merchant_id', 'created_at'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('plan_key', sa.String(length=32), nullable=False),
        sa.Column('trial_days', sa.Integer(), nullable=False),
        sa.Column('trial_grace_days', sa.Integer(), nullable=False),
        sa.Column('monthly_grace_days', sa.Integer(), nullable=False),
        sa.Column('deposit_grace_days', sa.Integer(), nullable=False),
        sa.Column('payment_request_expiry_hours', sa.Integer(), nullable=False),
        sa.Column('pricing', sa.JSON(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_subscription_plans')),
        sa.UniqueConstraint('plan_key', name=op.f('uq_subscription_plans_plan_key')),
    )

    op.create_table(
        'payment_requests',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('months_requested', sa.Integer(), nullable=True),
        sa.Column('transfer_notes', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('verified_by', sa.String(length=64), nullable=True),
        sa.Column('rejected_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name=op.f('fk_payment_requests_merchant_id_merchants')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payment_requests')),
    )
    # At most one open request per merchant
    op.create_index(
        'uq_payment_requests_open_per_merchant',
        'payment_requests',
        ['merchant_id'],
        unique=True,
        postgresql_where=sa.text(OPEN_REQUEST_WHERE),
    )
    op.create_index('ix_payment_requests_status_expires', 'payment_requests', ['status', 'expires_at'])

    op.create_table(
        'merchant_balances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('balance', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('last_topup_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('balance >= 0', name=op.f('ck_merchant_balances_balance_non_negative')),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name=op.f('fk_merchant_balances_merchant_id_merchants')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_merchant_balances')),
        sa.UniqueConstraint('merchant_id', 'currency', name='uq_merchant_balances_merchant_currency'),
    )

    op.create_table(
        'balance_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('balance_before', sa.Numeric(14, 2), nullable=False),
        sa.Column('balance_after', sa.Numeric(14, 2), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('payment_request_id', sa.Integer(), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('created_by', sa.String(length=16), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name=op.f('fk_balance_transactions_merchant_id_merchants')),
        sa.ForeignKeyConstraint(
            ['payment_request_id'], ['payment_requests.id'],
            name=op.f('fk_balance_transactions_payment_request_id_payment_requests'),
        ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name=op.f('fk_balance_transactions_order_id_orders')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_balance_transactions')),
    )
    op.create_index('ix_balance_transactions_merchant_created', 'balance_transactions', ['merchant_id', 'created_at'])

    op.create_table(
        'notification_outbox',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=48), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('dedupe_key', sa.String(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name=op.f('fk_notification_outbox_merchant_id_merchants')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_notification_outbox')),
        sa.UniqueConstraint('dedupe_key', name=op.f('uq_notification_outbox_dedupe_key')),
    )
    op.create_index('ix_notification_outbox_merchant_created', 'notification_outbox', ['merchant_id', 'created_at'])

    op.create_table(
        'cron_job_locks',
        sa.Column('job_name', sa.String(length=64), nullable=False),
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('locked_until', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('job_name', name=op.f('pk_cron_job_locks')),
    )


def downgrade() -> None:
    op.drop_table('cron_job_locks')
    op.drop_index('ix_notification_outbox_merchant_created', table_name='notification_outbox')
    op.drop_table('notification_outbox')
    op.drop_index('ix_balance_transactions_merchant_created', table_name='balance_transactions')
    op.drop_table('balance_transactions')
    op.drop_table('merchant_balances')
    op.drop_index('ix_payment_requests_status_expires', table_name='payment_requests')
    op.drop_index('uq_payment_requests_open_per_merchant', table_name='payment_requests')
    op.drop_table('payment_requests')
    op.drop_table('subscription_plans')
    op.drop_index('ix_subscription_history_merchant_created', table_name='subscription_history')
    op.drop_table('subscription_history')
    op.drop_index('ix_merchant_subscriptions_status', table_name='merchant_subscriptions')
    op.drop_table('merchant_subscriptions')
    op.drop_index('ix_orders_merchant_id', table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_menu_items_deleted_at', table_name='menu_items')
    op.drop_table('menu_items')
    op.drop_index('ix_menu_categories_deleted_at', table_name='menu_categories')
    op.drop_table('menu_categories')
    op.drop_table('merchants')
