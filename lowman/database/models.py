"""
SQLAlchemy ORM models for the regional leaderboard and achievement-tier engine.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Float,
    DateTime,
    Enum,
    JSON,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from lowman.database.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class BadgeType(str, enum.Enum):
    """Badge type enum. LOWMAN and HOLE_IN_ONE are course scoped; SCRATCH and ACE are tiers."""

    LOWMAN = "lowman"
    HOLE_IN_ONE = "hole_in_one"
    SCRATCH = "scratch"
    ACE = "ace"

    @property
    def is_tier(self) -> bool:
        return self in (BadgeType.SCRATCH, BadgeType.ACE)


class AchievementTier(str, enum.Enum):
    """Cross-course achievement tier. A user holds exactly one of these."""

    NONE = "none"
    SCRATCH = "scratch"
    ACE = "ace"


class NotificationEventType(str, enum.Enum):
    """Outbound event types consumed by the notification collaborator."""

    NEW_LEADER = "new_leader"
    BADGE_AWARDED = "badge_awarded"


class ScoreRecord(Base):
    """Immutable copy of every ingested score event, keyed by its event id."""

    __tablename__ = "score_records"

    event_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    region_key = Column(String, nullable=False)
    course_id = Column(Integer, nullable=False)
    course_name = Column(String, nullable=False)
    gross_score = Column(Integer, nullable=False)
    net_score = Column(Integer, nullable=False)
    hole_count = Column(Integer, nullable=False, default=18)
    had_hole_in_one = Column(Boolean, nullable=False, default=False)
    hole_number = Column(Integer, nullable=True)
    course_rating = Column(Float, nullable=True)
    slope_rating = Column(Float, nullable=True)
    par = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    ingested_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_score_records_region_course", "region_key", "course_id"),
        Index("idx_score_records_user", "user_id"),
    )


class Leaderboard(Base):
    """Top-10 materialized view of all scores posted for one (region, course)."""

    __tablename__ = "leaderboards"

    id = Column(String, primary_key=True)  # "{region_key}_{course_id}"
    region_key = Column(String, nullable=False)
    course_id = Column(Integer, nullable=False)
    course_name = Column(String, nullable=True)
    top_entries = Column(JSONType, nullable=False, default=list)
    low_net_score = Column(Integer, nullable=True)
    leader_user_id = Column(String, nullable=True)  # top_entries[0].user_id
    total_score_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_updated = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("region_key", "course_id", name="uq_leaderboards_region_course"),
        Index("idx_leaderboards_leader", "leader_user_id"),
        Index("idx_leaderboards_region", "region_key"),
    )


class LeaderboardSubmission(Base):
    """One row per score applied to a leaderboard; the idempotency key for leaderboard writes."""

    __tablename__ = "leaderboard_submissions"

    score_id = Column(String, primary_key=True)
    leaderboard_id = Column(String, ForeignKey("leaderboards.id"), nullable=False)
    user_id = Column(String, nullable=False)
    became_new_leader = Column(Boolean, nullable=False, default=False)
    leader_changed = Column(Boolean, nullable=False, default=False)
    previous_leader_id = Column(String, nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_leaderboard_submissions_leaderboard", "leaderboard_id"),)


class Badge(Base):
    """Course-scoped badge owned by a user (lowman, hole_in_one)."""

    __tablename__ = "badges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    badge_type = Column(
        Enum(BadgeType, values_callable=_enum_values, name="badgetype"), nullable=False
    )
    course_id = Column(Integer, nullable=False)
    course_name = Column(String, nullable=True)
    score = Column(Integer, nullable=True)
    score_id = Column(String, nullable=True)
    achieved_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "badge_type", "course_id", name="uq_badges_user_type_course"),
        Index("idx_badges_user", "user_id"),
    )


class UserTier(Base):
    """Single tier slot per user. Holding scratch and ace at once is unrepresentable."""

    __tablename__ = "user_tiers"

    user_id = Column(String, primary_key=True)
    tier = Column(
        Enum(AchievementTier, values_callable=_enum_values, name="achievementtier"),
        nullable=False,
        default=AchievementTier.NONE,
    )
    since = Column(DateTime(timezone=True), nullable=True)
    lowman_course_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class HandicapDifferential(Base):
    """Score differential for one round, used by the rolling handicap index."""

    __tablename__ = "handicap_differentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    score_id = Column(String, nullable=False, unique=True)
    course_id = Column(Integer, nullable=True)
    course_name = Column(String, nullable=True)
    gross_score = Column(Integer, nullable=False)
    differential = Column(Float, nullable=False)
    course_rating = Column(Float, nullable=False)
    slope_rating = Column(Float, nullable=False)
    holes = Column(Integer, nullable=False, default=18)
    is_nine_hole = Column(Boolean, nullable=False, default=False)
    expected_back_nine = Column(Float, nullable=True)
    is_used_in_calc = Column(Boolean, nullable=False, default=False)
    played_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_handicap_differentials_user_played", "user_id", "played_at"),)


class PlayerHandicap(Base):
    """Current handicap index derived from the differential window."""

    __tablename__ = "player_handicaps"

    user_id = Column(String, primary_key=True)
    handicap_index = Column(Float, nullable=True)
    rounds_in_window = Column(Integer, nullable=False, default=0)
    differentials_used = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class EngineNotification(Base):
    """Outbox row for an outbound event; dedupe_key makes emission idempotent."""

    __tablename__ = "engine_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dedupe_key = Column(String, nullable=False, unique=True)
    event_type = Column(
        Enum(NotificationEventType, values_callable=_enum_values, name="notificationeventtype"),
        nullable=False,
    )
    user_id = Column(String, nullable=False)
    score_id = Column(String, nullable=True)
    payload = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_engine_notifications_pending", "dispatched_at"),)
