"""Create tracking tables

Revision ID: 4c1f0e7b2d9a
Revises:
Create Date: 2026-10-19 10:12:47.318204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c1f0e7b2d9a'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_table(
        'events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('session_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(32), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('properties', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('page_url', sa.String(2048), nullable=True),
        sa.Column('referrer', sa.String(2048), nullable=True),
        sa.Column('duration', sa.Float(), nullable=True),
        sa.Column('revenue', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_events_user_id', 'events', ['user_id'])
    op.create_index('ix_events_session_id', 'events', ['session_id'])
    op.create_index('ix_events_event_type', 'events', ['event_type'])
    op.create_index('ix_events_timestamp', 'events', ['timestamp'])
    op.create_index('ix_events_page_url', 'events', ['page_url'])
    # Composite indexes for window queries
    op.create_index('idx_events_user_ts', 'events', ['user_id', 'timestamp'])
    op.create_index('idx_events_session_ts', 'events', ['session_id', 'timestamp'])
    op.create_index('idx_events_type_ts', 'events', ['event_type', 'timestamp'])
    op.create_index('idx_events_page_ts', 'events', ['page_url', 'timestamp'])

    op.create_table(
        'sessions',
        sa.Column('session_id', sa.String(255), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration', sa.BigInteger(), nullable=True),
        sa.Column('page_views', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('event_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('entry_page', sa.String(2048), nullable=True),
        sa.Column('exit_page', sa.String(2048), nullable=True),
        sa.Column('device', sa.String(64), nullable=True),
        sa.Column('browser', sa.String(64), nullable=True),
        sa.Column('os', sa.String(64), nullable=True),
        sa.Column('country', sa.String(64), nullable=True),
        sa.Column('region', sa.String(128), nullable=True),
        sa.Column('city', sa.String(128), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(1024), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_sessions_user_id', 'sessions', ['user_id'])
    op.create_index('ix_sessions_status', 'sessions', ['status'])
    op.create_index('ix_sessions_start_time', 'sessions', ['start_time'])
    op.create_index('ix_sessions_device', 'sessions', ['device'])
    op.create_index('ix_sessions_country', 'sessions', ['country'])
    op.create_index('idx_sessions_user_start', 'sessions', ['user_id', 'start_time'])
    op.create_index('idx_sessions_status_activity', 'sessions', ['status', 'last_activity_at'])

    op.create_table(
        'visitors',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('total_events', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_sessions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_purchases', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_revenue', sa.Float(), nullable=False, server_default='0'),
        sa.Column('first_seen', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_visitors_first_seen', 'visitors', ['first_seen'])
    op.create_index('ix_visitors_last_seen', 'visitors', ['last_seen'])


def downgrade():
    op.drop_table('visitors')
    op.drop_table('sessions')
    op.drop_table('events')
