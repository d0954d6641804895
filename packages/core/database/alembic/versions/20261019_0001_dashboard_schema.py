"""Dashboard schema: tickets, ticket messages, bot configs, activity log, daily stats

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:01:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261019_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables and indexes."""

    # ====================
    # STEP 1: Kanban
    # ====================

    op.create_table(
        'tickets',
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('phone_number', sa.String(length=32), nullable=False),
        sa.Column('contact_name', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('bot_paused', sa.Boolean(), nullable=False),
        sa.Column('message_preview', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_message_at', sa.DateTime(), nullable=False),
        sa.Column('last_contact_message_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('user_id', 'phone_number')
    )
    op.create_index('idx_tickets_user_status', 'tickets', ['user_id', 'status'])

    op.create_table(
        'ticket_messages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('ticket_id', sa.String(length=32), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('url', sa.String(length=500), nullable=True),
        sa.Column('sender', sa.String(length=10), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_ticket_messages_ticket_ts', 'ticket_messages', ['user_id', 'ticket_id', 'timestamp'])

    # ====================
    # STEP 2: Bot settings
    # ====================

    op.create_table(
        'bot_configs',
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('use_ai', sa.Boolean(), nullable=False),
        sa.Column('ai_api_key', sa.String(length=255), nullable=True),
        sa.Column('system_prompt', sa.Text(), nullable=True),
        sa.Column('use_custom_responses', sa.Boolean(), nullable=False),
        sa.Column('custom_responses', sa.JSON(), nullable=True),
        sa.Column('pause_bot_keyword', sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint('user_id')
    )

    # ====================
    # STEP 3: Metrics
    # ====================

    op.create_table(
        'activity_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_activity_log_user_ts', 'activity_log', ['user_id', 'timestamp'])

    op.create_table(
        'daily_stats',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('day', sa.String(length=10), nullable=False),
        sa.Column('messages_sent', sa.Integer(), server_default='0', nullable=False),
        sa.Column('messages_failed', sa.Integer(), server_default='0', nullable=False),
        sa.Column('messages_pending', sa.Integer(), server_default='0', nullable=False),
        sa.Column('total_response_time', sa.Float(), server_default='0', nullable=False),
        sa.Column('response_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('total_uptime', sa.Float(), server_default='0', nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'day', name='uq_daily_stats_user_day')
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('daily_stats')
    op.drop_index('idx_activity_log_user_ts', table_name='activity_log')
    op.drop_table('activity_log')
    op.drop_table('bot_configs')
    op.drop_index('idx_ticket_messages_ticket_ts', table_name='ticket_messages')
    op.drop_table('ticket_messages')
    op.drop_index('idx_tickets_user_status', table_name='tickets')
    op.drop_table('tickets')
