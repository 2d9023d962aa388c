"""
Tests for score event ingestion.
Covers validation, the 18-hole gate, replay idempotency, tier fan-out and
notification delivery.
"""
import json
from datetime import datetime, timedelta

import pytest
import pytz
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from lowman.database.models import (
    AchievementTier,
    BadgeType,
    EngineNotification,
    Leaderboard,
    ScoreRecord,
)
from lowman.models.schemas import BadgeAwardedEvent, NewLeaderEvent
from lowman.services import leaderboard_service, notification_service, redis_service, tier_service
from lowman.services.ingest_service import IngestService, find_missing_fields
from lowman.services.notification_service import NOTIFICATION_CHANNEL, get_notification_dispatcher
from lowman.utils.exceptions import PermanentIngestError, TransientIngestError

BASE_TIME = datetime(2026, 7, 4, 7, 30, tzinfo=pytz.UTC)


def score(event_id, user_id, course_id, net, minutes=0, **overrides):
    """Wire-format score event (camelCase, as the delivery mechanism sends it)."""
    payload = {
        "eventId": event_id,
        "userId": user_id,
        "displayName": user_id.title(),
        "regionKey": "bay-area",
        "courseId": course_id,
        "courseName": f"Course {course_id}",
        "grossScore": net + 8,
        "netScore": net,
        "holeCount": 18,
        "createdAt": (BASE_TIME + timedelta(minutes=minutes)).isoformat(),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def service(test_engine):
    return IngestService()


def test_find_missing_fields_accepts_either_key_style():
    assert find_missing_fields(score("e1", "alice", 1, 70)) == []
    missing = find_missing_fields({"event_id": "e1", "userId": "  ", "course_id": 3})
    assert missing == ["user_id", "region_key", "course_name", "gross_score", "net_score"]


@pytest.mark.asyncio
async def test_missing_fields_are_permanent(service):
    with pytest.raises(PermanentIngestError) as exc_info:
        await service.ingest({"eventId": "e1", "userId": "alice"})

    assert exc_info.value.missing_fields == [
        "course_id", "course_name", "gross_score", "net_score", "region_key",
    ]


@pytest.mark.asyncio
async def test_malformed_fields_are_permanent(service):
    with pytest.raises(PermanentIngestError) as exc_info:
        await service.ingest(score("e1", "alice", 1, 70, grossScore="eighty"))
    assert "grossScore" in exc_info.value.missing_fields


@pytest.mark.asyncio
async def test_first_score_makes_a_new_leader(service, db_session, published):
    effects = await service.ingest(score("e1", "alice", 1, 70))

    assert effects.ranked is True
    assert effects.became_new_leader is True
    assert effects.lowman_awarded is True
    assert effects.replayed is False
    assert effects.leaderboard.leader_user_id == "alice"
    assert effects.tier_changes == []
    assert effects.badges_awarded == [
        BadgeAwardedEvent(user_id="alice", badge_type=BadgeType.LOWMAN, course_id=1)
    ]
    assert NewLeaderEvent(
        region_key="bay-area", course_id=1, user_id="alice", gross_score=78, net_score=70
    ) in effects.notifications

    assert len(published) == 2
    channels = {channel for channel, _ in published}
    assert channels == {NOTIFICATION_CHANNEL}
    types = sorted(json.loads(message)["type"] for _, message in published)
    assert types == ["badge_awarded", "new_leader"]


@pytest.mark.asyncio
async def test_nine_hole_rounds_are_not_ranked(service, db_session):
    effects = await service.ingest(score("e9", "alice", 1, 34, holeCount=9))

    assert effects.ranked is False
    assert effects.leaderboard is None
    assert effects.became_new_leader is False

    boards = await db_session.execute(select(func.count(Leaderboard.id)))
    assert boards.scalar() == 0
    stored = await db_session.get(ScoreRecord, "e9")
    assert stored.hole_count == 9


@pytest.mark.asyncio
async def test_replay_changes_nothing(service, db_session, published):
    first = await service.ingest(score("e1", "alice", 1, 70))
    second = await service.ingest(score("e1", "alice", 1, 70))

    assert second.replayed is True
    assert second.became_new_leader is True
    assert second.leaderboard.total_score_count == first.leaderboard.total_score_count == 1
    assert second.notifications == first.notifications
    # Already dispatched the first time
    assert len(published) == 2

    records = await db_session.execute(select(func.count(ScoreRecord.event_id)))
    assert records.scalar() == 1
    notifications = await db_session.execute(select(func.count(EngineNotification.id)))
    assert notifications.scalar() == 2


@pytest.mark.asyncio
async def test_tier_follows_lowman_count(service, db_session):
    await service.ingest(score("a1", "alice", 1, 70, minutes=1))
    second = await service.ingest(score("a2", "alice", 2, 70, minutes=2))
    third = await service.ingest(score("a3", "alice", 3, 70, minutes=3))

    assert [t.new_tier for t in second.tier_changes] == [AchievementTier.SCRATCH]
    assert [t.new_tier for t in third.tier_changes] == [AchievementTier.ACE]
    assert BadgeAwardedEvent(user_id="alice", badge_type=BadgeType.ACE) in third.badges_awarded


@pytest.mark.asyncio
async def test_displaced_leader_is_demoted(service, db_session):
    await service.ingest(score("a1", "alice", 1, 70, minutes=1))
    await service.ingest(score("a2", "alice", 2, 70, minutes=2))

    effects = await service.ingest(score("b1", "bob", 2, 65, minutes=3))

    assert effects.became_new_leader is True
    demotions = [t for t in effects.tier_changes if t.user_id == "alice"]
    assert len(demotions) == 1
    assert demotions[0].previous_tier == AchievementTier.SCRATCH
    assert demotions[0].new_tier == AchievementTier.NONE


@pytest.mark.asyncio
async def test_tied_net_won_on_gross_moves_tiers_without_new_leader(service, db_session, published):
    for course_id in (1, 2, 3):
        await service.ingest(score(f"a{course_id}", "alice", course_id, 70, minutes=course_id, grossScore=80))
    published.clear()

    effects = await service.ingest(score("b2", "bob", 2, 70, minutes=5, grossScore=75))

    assert effects.became_new_leader is False
    assert effects.leaderboard.leader_user_id == "bob"
    assert effects.lowman_awarded is True
    assert BadgeAwardedEvent(user_id="bob", badge_type=BadgeType.LOWMAN, course_id=2) in effects.badges_awarded
    assert not any(isinstance(n, NewLeaderEvent) for n in effects.notifications)

    demotions = [t for t in effects.tier_changes if t.user_id == "alice"]
    assert len(demotions) == 1
    assert demotions[0].previous_tier == AchievementTier.ACE
    assert demotions[0].new_tier == AchievementTier.SCRATCH

    state = await tier_service.get_achievement_state(db_session, "alice")
    assert state.lowman_course_count == 2
    assert state.current_tier == AchievementTier.SCRATCH

    replay = await service.ingest(score("b2", "bob", 2, 70, minutes=5, grossScore=75))
    assert replay.replayed is True
    assert replay.tier_changes == []


@pytest.mark.asyncio
async def test_unsupported_hole_count_is_permanent(service):
    with pytest.raises(PermanentIngestError) as exc_info:
        await service.ingest(score("e12", "alice", 1, 50, holeCount=12))
    assert "holeCount" in exc_info.value.missing_fields


@pytest.mark.asyncio
async def test_worse_score_is_not_a_new_leader(service, db_session, published):
    await service.ingest(score("a1", "alice", 1, 70, minutes=1))
    published.clear()

    effects = await service.ingest(score("b1", "bob", 1, 75, minutes=2))

    assert effects.became_new_leader is False
    assert effects.notifications == []
    assert published == []
    assert [e.user_id for e in effects.leaderboard.top_entries] == ["alice", "bob"]


@pytest.mark.asyncio
async def test_hole_in_one_badge(service, db_session):
    effects = await service.ingest(score("h1", "alice", 4, 80, holeCount=9, hadHoleInOne=True, holeNumber=7))
    replay = await service.ingest(score("h1", "alice", 4, 80, holeCount=9, hadHoleInOne=True, holeNumber=7))

    expected = BadgeAwardedEvent(user_id="alice", badge_type=BadgeType.HOLE_IN_ONE, course_id=4)
    assert effects.badges_awarded == [expected]
    assert replay.badges_awarded == [expected]


@pytest.mark.asyncio
async def test_handicap_runs_for_rated_rounds(service, db_session):
    effects = await service.ingest(score("r1", "alice", 1, 70, courseRating=72.0, slopeRating=113))
    assert effects.handicap is not None
    assert effects.handicap.rounds_in_window == 1
    assert effects.handicap.differentials[0].score_id == "r1"


@pytest.mark.asyncio
async def test_store_failures_are_transient(service, monkeypatch):
    async def broken_submit(*args, **kwargs):
        raise OperationalError("UPDATE leaderboards", {}, Exception("connection lost"))

    monkeypatch.setattr(leaderboard_service, "submit", broken_submit)

    with pytest.raises(TransientIngestError):
        await service.ingest(score("e1", "alice", 1, 70))


@pytest.mark.asyncio
async def test_undelivered_notifications_stay_pending(service, db_session, monkeypatch):
    async def redis_down(channel, message):
        return False

    monkeypatch.setattr(redis_service, "redis_publish", redis_down)
    await service.ingest(score("e1", "alice", 1, 70))

    dispatcher = get_notification_dispatcher()
    assert await dispatcher.count_pending(db_session) == 2

    received = []

    async def sink(event_type, payload):
        received.append((event_type, payload))

    dispatcher.register_sink(sink)
    # A redelivery of the same event flushes what was left pending
    await service.ingest(score("e1", "alice", 1, 70))

    assert await dispatcher.count_pending(db_session) == 0
    assert {event_type.value for event_type, _ in received} == {"new_leader", "badge_awarded"}
    new_leader = next(p for t, p in received if t.value == "new_leader")
    assert new_leader["userId"] == "alice"
    assert new_leader["netScore"] == 70


@pytest.mark.asyncio
async def test_user_notifications_listing(service, db_session):
    await service.ingest(score("e1", "alice", 1, 70))

    records = await notification_service.get_user_notifications(db_session, "alice")
    assert len(records) == 2
    assert all(r.dispatched for r in records)
