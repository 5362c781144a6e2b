"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit ledger, webhook and provider quota tables."""

    # ========================================================================
    # Create credit_accounts table
    # ========================================================================
    op.create_table(
        'credit_accounts',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('subscription_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('purchased_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('plan_key', sa.String(50), nullable=True),
        sa.Column('billing_customer_id', sa.String(255), nullable=True),
        sa.Column('subscription_id', sa.String(255), nullable=True),
        sa.Column('subscription_status', sa.String(30), nullable=False, server_default='none'),
        sa.Column('cycle_anchor_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_subscription_event_at', sa.BigInteger(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('subscription_balance >= 0', name='ck_subscription_balance_non_negative'),
        sa.CheckConstraint('purchased_balance >= 0', name='ck_purchased_balance_non_negative'),
    )
    op.create_index('idx_credit_accounts_customer', 'credit_accounts', ['billing_customer_id'])
    op.create_index('idx_credit_accounts_subscription', 'credit_accounts', ['subscription_id'])

    # ========================================================================
    # Create credit_transactions table (append-only)
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(255), sa.ForeignKey('credit_accounts.user_id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('pool', sa.String(20), nullable=False),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('subscription_balance_after', sa.BigInteger(), nullable=False),
        sa.Column('purchased_balance_after', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('amount <> 0', name='ck_transaction_amount_non_zero'),
        sa.CheckConstraint(
            "type IN ('purchase', 'subscription', 'usage', 'refund', 'bonus', 'expiration')",
            name='credit_transaction_type',
        ),
        sa.CheckConstraint("pool IN ('subscription', 'purchased', 'mixed')", name='credit_pool'),
        sa.UniqueConstraint('user_id', 'type', 'reference_id', name='uq_transaction_reference'),
    )
    op.create_index('idx_credit_transactions_user_id', 'credit_transactions', ['user_id', 'id'])

    # ========================================================================
    # Create webhook_events table (dedup claims)
    # ========================================================================
    op.create_table(
        'webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('processing', 'completed', 'failed', 'unrecoverable')",
            name='webhook_event_status',
        ),
    )
    op.create_index('idx_webhook_events_status', 'webhook_events', ['status'])

    # ========================================================================
    # Create provider_quota_usage table
    # ========================================================================
    op.create_table(
        'provider_quota_usage',
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('usage_month', sa.String(7), nullable=False),
        sa.Column('usage_day', sa.String(10), nullable=False),
        sa.Column('daily_requests', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('monthly_requests', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('monthly_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('provider', 'usage_month'),
        sa.CheckConstraint('daily_requests >= 0', name='ck_quota_daily_non_negative'),
        sa.CheckConstraint('monthly_requests >= 0', name='ck_quota_monthly_non_negative'),
        sa.CheckConstraint('monthly_credits >= 0', name='ck_quota_credits_non_negative'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('provider_quota_usage')
    op.drop_index('idx_webhook_events_status', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('idx_credit_transactions_user_id', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_index('idx_credit_accounts_subscription', table_name='credit_accounts')
    op.drop_index('idx_credit_accounts_customer', table_name='credit_accounts')
    op.drop_table('credit_accounts')
