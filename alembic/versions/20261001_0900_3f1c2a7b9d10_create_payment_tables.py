"""create_payment_tables

Revision ID: 3f1c2a7b9d10
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c2a7b9d10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'payments',
        sa.Column('reference', sa.TEXT(), nullable=False),
        sa.Column('provider', sa.TEXT(), nullable=False),
        sa.Column('organization_id', sa.TEXT(), nullable=False),
        sa.Column('user_id', sa.TEXT(), nullable=True),
        sa.Column('plan_id', sa.TEXT(), nullable=False),
        sa.Column('billing_cycle', sa.TEXT(), nullable=False),
        sa.Column('amount', sa.BIGINT(), nullable=False),
        sa.Column('currency', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('transaction_id', sa.TEXT(), nullable=True),
        sa.Column('verified_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('subscription_applied_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('reference'),
        sa.CheckConstraint("status IN ('pending', 'completed', 'failed')", name='ck_payments_status'),
        sa.CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
    )
    op.create_index('idx_payments_org', 'payments', ['organization_id'])
    op.create_index('idx_payments_status_created', 'payments', ['status', 'created_at'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.TEXT(), nullable=False),
        sa.Column('plan_id', sa.TEXT(), nullable=False),
        sa.Column('billing_cycle', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('start_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('end_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('amount', sa.BIGINT(), nullable=False),
        sa.Column('payment_reference', sa.TEXT(), nullable=False),
        sa.Column('provider', sa.TEXT(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', name='uq_subscriptions_organization'),
    )
    op.create_index('idx_subscriptions_payment_reference', 'subscriptions', ['payment_reference'])

    op.create_table(
        'organizations',
        sa.Column('id', sa.TEXT(), nullable=False),
        sa.Column('name', sa.TEXT(), nullable=False),
        sa.Column('subscription_status', sa.TEXT(), nullable=True),
        sa.Column('subscription_plan', sa.TEXT(), nullable=True),
        sa.Column('subscription_end_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('trial_start_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'webhook_dedup_events',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.TEXT(), nullable=False),
        sa.Column('dedup_key', sa.TEXT(), nullable=False),
        sa.Column('first_seen_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('request_hash', sa.TEXT(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'dedup_key', name='uq_webhook_dedup_events'),
    )
    op.create_index('idx_webhook_dedup_status', 'webhook_dedup_events', ['status'])


def downgrade() -> None:
    op.drop_index('idx_webhook_dedup_status', table_name='webhook_dedup_events')
    op.drop_table('webhook_dedup_events')
    op.drop_table('organizations')
    op.drop_index('idx_subscriptions_payment_reference', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('idx_payments_status_created', table_name='payments')
    op.drop_index('idx_payments_org', table_name='payments')
    op.drop_table('payments')
