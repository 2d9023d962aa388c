"""
Tests for cross-course achievement tier evaluation.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
import pytz
from sqlalchemy import select, func

from lowman.database.models import AchievementTier, Badge, BadgeType, EngineNotification, UserTier
from lowman.models.schemas import LeaderboardEntry
from lowman.services import badge_service, leaderboard_service, tier_service, transactions

BASE_TIME = datetime(2026, 6, 1, 8, 0, tzinfo=pytz.UTC)
_counter = {"n": 0}


async def lead_course(session, user_id, course_id, net=70):
    """Post a score for user_id that beats everything on the course so far."""
    _counter["n"] += 1
    n = _counter["n"]
    return await leaderboard_service.submit(session, "region", course_id, LeaderboardEntry(
        user_id=user_id,
        gross_score=net + 5,
        net_score=net,
        created_at=BASE_TIME + timedelta(minutes=n),
        score_id=f"score-{n}",
    ), course_name=f"Course {course_id}")


@pytest.mark.parametrize(
    "count,expected",
    [
        (0, AchievementTier.NONE),
        (1, AchievementTier.NONE),
        (2, AchievementTier.SCRATCH),
        (3, AchievementTier.ACE),
        (7, AchievementTier.ACE),
    ],
)
def test_tier_for_count(count, expected):
    assert tier_service.tier_for_count(count) == expected


@pytest.mark.asyncio
async def test_scratch_at_two_courses_and_ace_at_three(db_session):
    await lead_course(db_session, "alice", 1)
    first = await tier_service.reevaluate(db_session, "alice", "region", 1)
    assert first.new_tier == AchievementTier.NONE
    assert first.changed is False
    assert first.lowman_awarded is True

    await lead_course(db_session, "alice", 2)
    second = await tier_service.reevaluate(db_session, "alice", "region", 2)
    assert second.previous_tier == AchievementTier.NONE
    assert second.new_tier == AchievementTier.SCRATCH
    assert second.changed is True

    await lead_course(db_session, "alice", 3)
    third = await tier_service.reevaluate(db_session, "alice", "region", 3)
    assert third.previous_tier == AchievementTier.SCRATCH
    assert third.new_tier == AchievementTier.ACE
    assert third.lowman_course_count == 3

    state = await tier_service.get_achievement_state(db_session, "alice")
    assert state.current_tier == AchievementTier.ACE
    assert state.tier_since is not None


@pytest.mark.asyncio
async def test_losing_a_course_drops_ace_to_scratch(db_session):
    for course_id in (1, 2, 3):
        await lead_course(db_session, "alice", course_id)
    await tier_service.reevaluate(db_session, "alice")

    await lead_course(db_session, "bob", 2, net=60)
    evaluation = await tier_service.reevaluate(db_session, "alice")

    assert evaluation.previous_tier == AchievementTier.ACE
    assert evaluation.new_tier == AchievementTier.SCRATCH
    assert evaluation.lowman_course_count == 2


@pytest.mark.asyncio
async def test_reevaluate_is_idempotent(db_session):
    await lead_course(db_session, "alice", 1)
    await lead_course(db_session, "alice", 2)

    first = await tier_service.reevaluate(db_session, "alice", "region", 2, score_id="s")
    second = await tier_service.reevaluate(db_session, "alice", "region", 2, score_id="s")

    assert first.changed is True
    assert second.changed is False
    assert second.lowman_awarded is False

    badges = await db_session.execute(select(func.count(Badge.id)).where(Badge.user_id == "alice"))
    assert badges.scalar() == 1
    notifications = await db_session.execute(select(func.count(EngineNotification.id)))
    # lowman badge for course 2 plus the scratch tier, once each
    assert notifications.scalar() == 2


@pytest.mark.asyncio
async def test_lowman_badge_only_when_leading_trigger_course(db_session):
    await lead_course(db_session, "alice", 1)
    await lead_course(db_session, "bob", 1, net=60)

    evaluation = await tier_service.reevaluate(db_session, "alice", "region", 1)
    assert evaluation.lowman_awarded is False


@pytest.mark.asyncio
async def test_reevaluate_requires_user(db_session):
    with pytest.raises(ValueError):
        await tier_service.reevaluate(db_session, "")


@pytest.mark.asyncio
async def test_concurrent_reevaluations_settle_on_one_tier(db_session, session_factory, monkeypatch):
    monkeypatch.setattr(transactions, "MAX_ATTEMPTS", 15)
    monkeypatch.setattr(transactions, "RETRY_BASE_DELAY", 0.01)

    for course_id in (1, 2, 3):
        await lead_course(db_session, "alice", course_id)

    async def evaluate():
        async with session_factory() as session:
            return await tier_service.reevaluate(session, "alice")

    results = await asyncio.gather(*(evaluate() for _ in range(4)))

    assert all(r.new_tier == AchievementTier.ACE for r in results)
    assert sum(r.changed for r in results) == 1

    async with session_factory() as session:
        rows = (await session.execute(select(UserTier).where(UserTier.user_id == "alice"))).scalars().all()
        assert len(rows) == 1
        assert rows[0].tier == AchievementTier.ACE
        badges = await badge_service.list_badges(session, "alice")
    tier_badges = [b for b in badges if b.badge_type in (BadgeType.SCRATCH, BadgeType.ACE)]
    assert [b.badge_type for b in tier_badges] == [BadgeType.ACE]
