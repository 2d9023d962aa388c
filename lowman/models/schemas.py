"""
Pydantic models for events, API request/response validation, and service results.
"""

from datetime import datetime
from typing import Literal, Optional, List, Union
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from lowman.database.models import AchievementTier, BadgeType, NotificationEventType
from lowman.utils.datetime_utils import ensure_utc, utcnow


class CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase names used on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Inbound
# ============================================================================


class ScoreEvent(CamelModel):
    """A completed round. Produced once per score record and never mutated."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    region_key: str = Field(min_length=1)
    course_id: int
    course_name: str = Field(min_length=1)
    gross_score: int
    net_score: int
    hole_count: Literal[9, 18] = 18
    had_hole_in_one: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    display_name: Optional[str] = None
    hole_number: Optional[int] = None
    course_rating: Optional[float] = None
    slope_rating: Optional[float] = None
    par: Optional[int] = None

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


# ============================================================================
# Leaderboards
# ============================================================================


class LeaderboardEntry(BaseModel):
    """One score inside a leaderboard's top list."""

    user_id: str
    display_name: str = "Unknown"
    gross_score: int
    net_score: int
    created_at: datetime
    score_id: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def sort_key(self):
        """Lower net wins, then lower gross, then the earlier submission."""
        return (self.net_score, self.gross_score, self.created_at)


class LeaderboardResponse(BaseModel):
    """Leaderboard record for one (region, course)."""

    id: str
    region_key: str
    course_id: int
    course_name: Optional[str] = None
    top_entries: List[LeaderboardEntry]
    low_net_score: Optional[int] = None
    leader_user_id: Optional[str] = None
    total_score_count: int
    last_updated: Optional[datetime] = None


class SubmitResult(BaseModel):
    """Outcome of a leaderboard submission."""

    leaderboard: LeaderboardResponse
    became_new_leader: bool
    # Rank 1 moved to another user, including a tied net won on gross
    leader_changed: bool = False
    previous_leader_id: Optional[str] = None
    replayed: bool = False


class RebuildResponse(BaseModel):
    rebuilt: int


# ============================================================================
# Badges and tiers
# ============================================================================


class BadgeAward(BaseModel):
    """A badge to award. course_id is required for course-scoped badges."""

    badge_type: BadgeType
    course_id: Optional[int] = None
    course_name: Optional[str] = None
    score: Optional[int] = None
    score_id: Optional[str] = None
    achieved_at: datetime = Field(default_factory=utcnow)


class BadgeResponse(BaseModel):
    badge_type: BadgeType
    course_id: Optional[int] = None
    course_name: Optional[str] = None
    score: Optional[int] = None
    achieved_at: Optional[datetime] = None


class TierEvaluation(BaseModel):
    """Result of re-deriving a user's tier from the current leaderboards."""

    user_id: str
    previous_tier: AchievementTier
    new_tier: AchievementTier
    lowman_course_count: int
    changed: bool
    lowman_awarded: bool = False


class AchievementStateResponse(BaseModel):
    user_id: str
    lowman_course_count: int
    current_tier: AchievementTier
    tier_since: Optional[datetime] = None


# ============================================================================
# Handicap
# ============================================================================


class DifferentialResponse(BaseModel):
    score_id: str
    differential: float
    played_at: datetime
    course_rating: float
    slope_rating: float
    is_used_in_calc: bool


class HandicapResponse(BaseModel):
    user_id: str
    handicap_index: Optional[float] = None
    rounds_in_window: int = 0
    differentials_used: int = 0
    differentials: List[DifferentialResponse] = []


# ============================================================================
# Outings
# ============================================================================


class OutingProgress(CamelModel):
    """A player's live progress in an outing round."""

    player_id: str
    group_id: Optional[str] = None
    display_name: Optional[str] = None
    gross_score: int = 0
    net_score: int = 0
    thru: int = Field(default=0, ge=0)
    format_score: Optional[int] = None  # Stableford points


class OutingLeaderboardEntry(CamelModel):
    player_id: str
    group_id: Optional[str] = None
    display_name: Optional[str] = None
    gross_score: int
    net_score: int
    score_to_par: str
    thru: int
    format_score: Optional[int] = None
    position: Union[int, str]


class OutingLeaderboardRequest(CamelModel):
    entries: List[OutingProgress]
    course_par: int = 72
    format_id: str = "stroke_play"


# ============================================================================
# Outbound events
# ============================================================================


class NewLeaderEvent(CamelModel):
    region_key: str
    course_id: int
    user_id: str
    gross_score: int
    net_score: int


class BadgeAwardedEvent(CamelModel):
    user_id: str
    badge_type: BadgeType
    course_id: Optional[int] = None


class NotificationRecord(BaseModel):
    id: int
    event_type: NotificationEventType
    user_id: str
    payload: dict
    dispatched: bool


class DispatchResponse(BaseModel):
    dispatched: int
    pending: int


# ============================================================================
# Ingest
# ============================================================================


class IngestEffects(BaseModel):
    """Everything a single ingest did (or confirmed on replay)."""

    event_id: str
    ranked: bool
    leaderboard: Optional[LeaderboardResponse] = None
    became_new_leader: bool = False
    lowman_awarded: bool = False
    tier_changes: List[TierEvaluation] = []
    badges_awarded: List[BadgeAwardedEvent] = []
    handicap: Optional[HandicapResponse] = None
    notifications: List[Union[NewLeaderEvent, BadgeAwardedEvent]] = []
    replayed: bool = False


class IngestErrorResponse(BaseModel):
    detail: str
    missing_fields: List[str] = []
    retryable: bool
