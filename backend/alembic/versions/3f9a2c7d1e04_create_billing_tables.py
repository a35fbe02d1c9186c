"""create users, subscriptions and stripe reconciliation tables

Revision ID: 3f9a2c7d1e04
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f9a2c7d1e04'
down_revision = None
branch_labels = None
depends_on = None

BILLING_INTERVALS = ('month', 'year')
SUBSCRIPTION_STATUSES = (
    'incomplete', 'incomplete_expired', 'trialing', 'active', 'past_due', 'unpaid', 'paused', 'canceled',
)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('role', sa.Enum('user', 'admin', name='user_role'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_customer_id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('live_user_id', sa.Integer(), nullable=True, comment='user_id while live, NULL once terminal'),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_schedule_id', sa.String(255), nullable=True),
        sa.Column('plan_id', sa.String(64), nullable=False),
        sa.Column('billing_interval', sa.Enum(*BILLING_INTERVALS, name='billing_interval'), nullable=False),
        sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscription_status'), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('scheduled_plan_id', sa.String(64), nullable=True),
        sa.Column('scheduled_interval', sa.Enum(*BILLING_INTERVALS, name='scheduled_interval'), nullable=True),
        sa.Column('scheduled_price_id', sa.String(255), nullable=True),
        sa.Column('scheduled_change_at', sa.DateTime(), nullable=True),
        sa.Column(
            'scheduled_change_reason',
            sa.Enum('downgrade', 'interval_switch', 'cancellation', name='scheduled_change_reason'),
            nullable=True,
        ),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('live_user_id'),
        sa.UniqueConstraint('stripe_subscription_id'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])
    op.create_index('ix_subscriptions_stripe_schedule_id', 'subscriptions', ['stripe_schedule_id'])

    # webhook idempotency
    op.create_table(
        'processed_stripe_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('event_created_at', sa.DateTime(), nullable=True, comment="Stripe's created timestamp (UTC)"),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processed_stripe_events_event_id', 'processed_stripe_events', ['event_id'], unique=True)

    op.create_table(
        'subscription_plan_changes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('old_plan_id', sa.String(64), nullable=True),
        sa.Column('old_interval', sa.String(8), nullable=True),
        sa.Column('new_plan_id', sa.String(64), nullable=True),
        sa.Column('new_interval', sa.String(8), nullable=True),
        sa.Column('strategy', sa.String(40), nullable=False, comment='transition strategy or cancellation'),
        sa.Column('effective_at', sa.DateTime(), nullable=True, comment='NULL when applied immediately'),
        sa.Column('applied', sa.Boolean(), nullable=False),
        sa.Column('stripe_event_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscription_plan_changes_subscription_id', 'subscription_plan_changes', ['subscription_id'])


def downgrade() -> None:
    op.drop_index('ix_subscription_plan_changes_subscription_id', table_name='subscription_plan_changes')
    op.drop_table('subscription_plan_changes')
    op.drop_index('ix_processed_stripe_events_event_id', table_name='processed_stripe_events')
    op.drop_table('processed_stripe_events')
    op.drop_index('ix_subscriptions_stripe_schedule_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_stripe_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
