"""
Customer mappings and in-app notifications

Revision ID: 0002_mappings_notifications
Revises: 0001_usage_ledger
Create Date: 2026-10-19 10:40:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_mappings_notifications'
down_revision = '0001_usage_ledger'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'customer_mappings',
        sa.Column('owner_id', sa.String(length=128), primary_key=True),
        sa.Column('stripe_customer_id', sa.String(length=128), nullable=False),
        sa.Column('stripe_link', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_customer_mappings_stripe_customer_id', 'customer_mappings', ['stripe_customer_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('owner_id', sa.String(length=128), nullable=False),
        sa.Column('kind', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('dedupe_key', sa.String(length=255), nullable=True, unique=True),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notifications_owner_id', 'notifications', ['owner_id'])


def downgrade() -> None:
    op.drop_index('ix_notifications_owner_id', table_name='notifications')
    op.drop_table('notifications')

    op.drop_index('ix_customer_mappings_stripe_customer_id', table_name='customer_mappings')
    op.drop_table('customer_mappings')
