"""Create billing sync tables

Revision ID: 0001_billing_sync
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_billing_sync'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, subscriptions, usage ledgers and the webhook event log."""

    op.create_table(
        'users',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('email', sa.String(320)),

        # Stripe links
        sa.Column('stripe_customer_id', sa.String(255), unique=True, index=True),
        sa.Column('last_checkout_session_id', sa.String(255)),

        # Plan projection (written by the projection updater only)
        sa.Column('subscription_tier', sa.String(32), server_default='free', nullable=False),
        sa.Column('subscription_status', sa.String(32)),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True)),
        sa.Column('subscription_features', sa.JSON, nullable=False, server_default='[]'),
        sa.Column('subscription_remote_id', sa.String(255)),
        sa.Column('projection_version', sa.DateTime(timezone=True)),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),

        # Stripe IDs
        sa.Column('remote_subscription_id', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('remote_customer_id', sa.String(255), index=True),
        sa.Column('remote_price_id', sa.String(255)),
        sa.Column('remote_product_id', sa.String(255)),
        sa.Column('status', sa.String(32), server_default='incomplete', nullable=False, index=True),

        # Plan
        sa.Column('plan_name', sa.String(64), nullable=False),
        sa.Column('plan_tier', sa.String(32), server_default='premium', nullable=False),
        sa.Column('price_amount', sa.Integer),
        sa.Column('price_currency', sa.String(8)),
        sa.Column('price_interval', sa.String(16)),
        sa.Column('price_interval_count', sa.Integer, server_default='1', nullable=False),
        sa.Column('plan_features', sa.JSON, nullable=False, server_default='[]'),
        sa.Column('plan_limits', sa.JSON, nullable=False, server_default='{}'),

        # Billing period
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('trial_start', sa.DateTime(timezone=True)),
        sa.Column('trial_end', sa.DateTime(timezone=True)),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default='false', nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True)),
        sa.Column('cancellation_reason', sa.String(255)),

        # Usage tracking
        sa.Column('images_generated', sa.Integer, server_default='0', nullable=False),
        sa.Column('models_generated', sa.Integer, server_default='0', nullable=False),
        sa.Column('storage_used', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('usage_last_reset', sa.DateTime(timezone=True)),

        # Ordering / compare-and-swap
        sa.Column('version', sa.DateTime(timezone=True)),
        sa.Column('revision', sa.Integer, server_default='0', nullable=False),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'usage_ledgers',
        sa.Column('user_id', sa.String(64), primary_key=True),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('images_generated', sa.Integer, server_default='0', nullable=False),
        sa.Column('models_generated', sa.Integer, server_default='0', nullable=False),
        sa.Column('storage_used', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('last_reset', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'billing_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), server_default='processing', nullable=False, index=True),
        sa.Column('payload', sa.JSON, nullable=False, server_default='{}'),
        sa.Column('attempts', sa.Integer, server_default='1', nullable=False),
        sa.Column('outcome', sa.String(32)),
        sa.Column('last_error', sa.Text),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
    )


def downgrade() -> None:
    """Drop billing sync tables."""
    op.drop_table('billing_webhook_events')
    op.drop_table('usage_ledgers')
    op.drop_table('subscriptions')
    op.drop_table('users')
