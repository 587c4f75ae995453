"""Initial migration - create all tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    # Create user_accounts table (provider id -> user)
    op.create_table(
        'user_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('provider_user_id', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('provider', 'provider_user_id', name='uq_user_accounts_provider_user'),
    )
    op.create_index('ix_user_accounts_user_id', 'user_accounts', ['user_id'])

    # Create oauth_tokens table
    op.create_table(
        'oauth_tokens',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'provider', name='uq_oauth_tokens_user_provider'),
    )
    op.create_index('ix_oauth_tokens_user_id', 'oauth_tokens', ['user_id'])

    # Create backfill_requests table
    op.create_table(
        'backfill_requests',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('year', sa.String(4), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('rides_found', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('backfilled_up_to', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'provider', 'year', name='uq_backfill_requests_user_provider_year'),
    )
    op.create_index('ix_backfill_requests_user_id', 'backfill_requests', ['user_id'])

    # Create import_sessions table
    op.create_table(
        'import_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('last_activity_received_at', sa.DateTime(), nullable=True),
        sa.Column('unassigned_ride_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('user_acknowledged', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index(
        'ix_import_sessions_user_provider_status', 'import_sessions', ['user_id', 'provider', 'status']
    )

    # Create rides table
    op.create_table(
        'rides',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('garmin_activity_id', sa.String(64), unique=True, nullable=True),
        sa.Column('strava_activity_id', sa.String(64), unique=True, nullable=True),
        sa.Column('whoop_workout_id', sa.String(64), unique=True, nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=False),
        sa.Column('distance_miles', sa.Float(), nullable=False),
        sa.Column('elevation_gain_feet', sa.Float(), nullable=False),
        sa.Column('average_hr', sa.Integer(), nullable=True),
        sa.Column('ride_type', sa.String(50), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('bike_id', sa.String(36), nullable=True),
        sa.Column(
            'import_session_id', sa.String(36),
            sa.ForeignKey('import_sessions.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('is_duplicate', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('duplicate_of_id', sa.String(36), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_rides_user_id', 'rides', ['user_id'])
    op.create_index('ix_rides_start_time', 'rides', ['start_time'])
    op.create_index('ix_rides_import_session_id', 'rides', ['import_session_id'])


def downgrade() -> None:
    op.drop_table('rides')
    op.drop_table('import_sessions')
    op.drop_table('backfill_requests')
    op.drop_table('oauth_tokens')
    op.drop_table('user_accounts')
    op.drop_table('users')
