"""001_initial_schema

Revision ID: 001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

Initial schema for the leaderboard engine:
- score_records: every ingested score event, keyed by event id
- leaderboards, leaderboard_submissions: per (region, course) top 10 and the
  per-score idempotency rows
- badges, user_tiers: course badges and the single tier slot per user
- handicap_differentials, player_handicaps: differential window and index
- engine_notifications: outbound event outbox
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

badge_type = sa.Enum('lowman', 'hole_in_one', 'scratch', 'ace', name='badgetype')
achievement_tier = sa.Enum('none', 'scratch', 'ace', name='achievementtier')
notification_event_type = sa.Enum('new_leader', 'badge_awarded', name='notificationeventtype')


def upgrade() -> None:
    op.create_table(
        'score_records',
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('region_key', sa.String(), nullable=False),
        sa.Column('course_id', sa.Integer(), nullable=False),
        sa.Column('course_name', sa.String(), nullable=False),
        sa.Column('gross_score', sa.Integer(), nullable=False),
        sa.Column('net_score', sa.Integer(), nullable=False),
        sa.Column('hole_count', sa.Integer(), nullable=False),
        sa.Column('had_hole_in_one', sa.Boolean(), nullable=False),
        sa.Column('hole_number', sa.Integer(), nullable=True),
        sa.Column('course_rating', sa.Float(), nullable=True),
        sa.Column('slope_rating', sa.Float(), nullable=True),
        sa.Column('par', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ingested_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('event_id'),
    )
    op.create_index('idx_score_records_region_course', 'score_records', ['region_key', 'course_id'])
    op.create_index('idx_score_records_user', 'score_records', ['user_id'])

    op.create_table(
        'leaderboards',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('region_key', sa.String(), nullable=False),
        sa.Column('course_id', sa.Integer(), nullable=False),
        sa.Column('course_name', sa.String(), nullable=True),
        sa.Column('top_entries', JSONType, nullable=False),
        sa.Column('low_net_score', sa.Integer(), nullable=True),
        sa.Column('leader_user_id', sa.String(), nullable=True),
        sa.Column('total_score_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('region_key', 'course_id', name='uq_leaderboards_region_course'),
    )
    op.create_index('idx_leaderboards_leader', 'leaderboards', ['leader_user_id'])
    op.create_index('idx_leaderboards_region', 'leaderboards', ['region_key'])

    op.create_table(
        'leaderboard_submissions',
        sa.Column('score_id', sa.String(), nullable=False),
        sa.Column('leaderboard_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('became_new_leader', sa.Boolean(), nullable=False),
        sa.Column('leader_changed', sa.Boolean(), nullable=False),
        sa.Column('previous_leader_id', sa.String(), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['leaderboard_id'], ['leaderboards.id']),
        sa.PrimaryKeyConstraint('score_id'),
    )
    op.create_index('idx_leaderboard_submissions_leaderboard', 'leaderboard_submissions', ['leaderboard_id'])

    op.create_table(
        'badges',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('badge_type', badge_type, nullable=False),
        sa.Column('course_id', sa.Integer(), nullable=False),
        sa.Column('course_name', sa.String(), nullable=True),
        sa.Column('score', sa.Integer(), nullable=True),
        sa.Column('score_id', sa.String(), nullable=True),
        sa.Column('achieved_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'badge_type', 'course_id', name='uq_badges_user_type_course'),
    )
    op.create_index('idx_badges_user', 'badges', ['user_id'])

    op.create_table(
        'user_tiers',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('tier', achievement_tier, nullable=False),
        sa.Column('since', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lowman_course_count', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'handicap_differentials',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('score_id', sa.String(), nullable=False),
        sa.Column('course_id', sa.Integer(), nullable=True),
        sa.Column('course_name', sa.String(), nullable=True),
        sa.Column('gross_score', sa.Integer(), nullable=False),
        sa.Column('differential', sa.Float(), nullable=False),
        sa.Column('course_rating', sa.Float(), nullable=False),
        sa.Column('slope_rating', sa.Float(), nullable=False),
        sa.Column('holes', sa.Integer(), nullable=False),
        sa.Column('is_nine_hole', sa.Boolean(), nullable=False),
        sa.Column('expected_back_nine', sa.Float(), nullable=True),
        sa.Column('is_used_in_calc', sa.Boolean(), nullable=False),
        sa.Column('played_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('score_id'),
    )
    op.create_index(
        'idx_handicap_differentials_user_played', 'handicap_differentials', ['user_id', 'played_at']
    )

    op.create_table(
        'player_handicaps',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('handicap_index', sa.Float(), nullable=True),
        sa.Column('rounds_in_window', sa.Integer(), nullable=False),
        sa.Column('differentials_used', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'engine_notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('dedupe_key', sa.String(), nullable=False),
        sa.Column('event_type', notification_event_type, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('score_id', sa.String(), nullable=True),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key'),
    )
    op.create_index('idx_engine_notifications_pending', 'engine_notifications', ['dispatched_at'])


def downgrade() -> None:
    op.drop_index('idx_engine_notifications_pending', table_name='engine_notifications')
    op.drop_table('engine_notifications')
    op.drop_table('player_handicaps')
    op.drop_index('idx_handicap_differentials_user_played', table_name='handicap_differentials')
    op.drop_table('handicap_differentials')
    op.drop_table('user_tiers')
    op.drop_index('idx_badges_user', table_name='badges')
    op.drop_table('badges')
    op.drop_index('idx_leaderboard_submissions_leaderboard', table_name='leaderboard_submissions')
    op.drop_table('leaderboard_submissions')
    op.drop_index('idx_leaderboards_region', table_name='leaderboards')
    op.drop_index('idx_leaderboards_leader', table_name='leaderboards')
    op.drop_table('leaderboards')
    op.drop_index('idx_score_records_user', table_name='score_records')
    op.drop_index('idx_score_records_region_course', table_name='score_records')
    op.drop_table('score_records')

    bind = op.get_bind()
    notification_event_type.drop(bind, checkfirst=True)
    achievement_tier.drop(bind, checkfirst=True)
    badge_type.drop(bind, checkfirst=True)
