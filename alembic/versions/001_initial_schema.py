"""initial schema - users, instances, instance logs, webhook deliveries

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Create whatsapp_instances table (status as VARCHAR, not enum)
    op.create_table(
        'whatsapp_instances',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('instance_name', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='creating'),
        sa.Column('qr_code', sa.Text(), nullable=True),
        sa.Column('phone_number', sa.String(32), nullable=True),
        sa.Column('webhook_url', sa.Text(), nullable=True),
        sa.Column('webhook_events', sa.JSON(), nullable=True),
        sa.Column('api_key', sa.String(64), nullable=False, unique=True),
        sa.Column('container_id', sa.String(128), nullable=True),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Create instance_logs table (level as VARCHAR)
    op.create_table(
        'instance_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('instance_id', sa.Integer(), sa.ForeignKey('whatsapp_instances.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('level', sa.String(10), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Create webhook_deliveries table (status as VARCHAR)
    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('instance_id', sa.Integer(), sa.ForeignKey('whatsapp_instances.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('event_type', sa.String(32), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('webhook_url', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Scheduler rehydration scans pending rows by due time
    op.create_index(
        'ix_webhook_deliveries_status_next_retry',
        'webhook_deliveries',
        ['status', 'next_retry_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_webhook_deliveries_status_next_retry', table_name='webhook_deliveries')
    op.drop_table('webhook_deliveries')
    op.drop_table('instance_logs')
    op.drop_table('whatsapp_instances')
    op.drop_table('users')
