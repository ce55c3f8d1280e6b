"""
Usage ledger: user accounts and accepted usage records

Revision ID: 0001_usage_ledger
Revises:
Create Date: 2026-10-19 10:05:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_usage_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'user_accounts',
        sa.Column('owner_id', sa.String(length=128), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=128), nullable=True),
        sa.Column('subscription_id', sa.String(length=128), nullable=True),
        sa.Column('plan', sa.String(length=64), nullable=True),
        sa.Column('subscription_status', sa.String(length=32), nullable=True),
        sa.Column('subscription_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('subscription_renewal_at', sa.DateTime(), nullable=True),
        sa.Column('trial_used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_credit_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('trial_credit_ever_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_credit_customer_id', sa.String(length=128), nullable=True),
        sa.Column('trial_credit_granted_at', sa.DateTime(), nullable=True),
        sa.Column('pending_local_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_local_reset_at', sa.DateTime(), nullable=True),
        sa.Column('billing_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('billing_blocked_reason', sa.String(length=64), nullable=True),
        sa.Column('past_due_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_script', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_voice', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_lipsync', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_edit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_payment_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_user_accounts_owner_id', 'user_accounts', ['owner_id'])
    op.create_index('ix_user_accounts_email', 'user_accounts', ['email'])
    op.create_index('ix_user_accounts_stripe_customer_id', 'user_accounts', ['stripe_customer_id'])

    op.create_table(
        'usage_records',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('owner_id', sa.String(length=128), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False, unique=True),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('free_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unit_cents', sa.Integer(), nullable=False),
        sa.Column('credited_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('charged_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('usage_event_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_usage_records_owner_id', 'usage_records', ['owner_id'])
    op.create_index('ix_usage_records_owner_created', 'usage_records', ['owner_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_usage_records_owner_created', table_name='usage_records')
    op.drop_index('ix_usage_records_owner_id', table_name='usage_records')
    op.drop_table('usage_records')

    op.drop_index('ix_user_accounts_stripe_customer_id', table_name='user_accounts')
    op.drop_index('ix_user_accounts_email', table_name='user_accounts')
    op.drop_index('ix_user_accounts_owner_id', table_name='user_accounts')
    op.drop_table('user_accounts')
