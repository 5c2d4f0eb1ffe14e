"""Initial schema for FinalRound billing.

Creates users, subscriptions (one per user, optimistic-lock version
column), the transaction ledger and the webhook event log.

For fresh installations:
    1. Configure your DATABASE_URL in .env
    2. Run: alembic upgrade head

Revision ID: 0001_initial
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(254), nullable=False),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('processor_subscription_id', sa.String(64), nullable=True),
        sa.Column('processor_plan_id', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('processor_status', sa.String(64), nullable=True),
        sa.Column('subscriber_email', sa.String(254), nullable=True),
        sa.Column('next_billing_time', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancel_scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
    op.create_index(
        'ix_subscriptions_processor_subscription_id', 'subscriptions',
        ['processor_subscription_id'], unique=True,
    )

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subscription_id', sa.String(64), nullable=True),
        sa.Column('transaction_id', sa.String(128), nullable=False),
        sa.Column('parent_transaction_id', sa.String(128), nullable=True),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('amount_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('amount_currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('plan', sa.String(20), nullable=True),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('raw_event_type', sa.String(100), nullable=True),
        sa.Column('raw_resource', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('ix_transactions_subscription_id', 'transactions', ['subscription_id'])
    op.create_index('ix_transactions_transaction_id', 'transactions', ['transaction_id'], unique=True)
    op.create_index('ix_transactions_parent_transaction_id', 'transactions', ['parent_transaction_id'])
    op.create_index('ix_transactions_occurred_at', 'transactions', ['occurred_at'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('subscription_id', sa.String(64), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('processing_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
    )
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'], unique=True)
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_subscription_id', 'webhook_events', ['subscription_id'])


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('transactions')
    op.drop_table('subscriptions')
    op.drop_table('users')
