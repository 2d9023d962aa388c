"""
Tests for the badge ledger: course badges and the single tier slot.
"""
import pytest

from lowman.database.models import AchievementTier, BadgeType
from lowman.models.schemas import BadgeAward
from lowman.services import badge_service


@pytest.mark.asyncio
async def test_award_course_badge_once(db_session):
    badge = BadgeAward(badge_type=BadgeType.LOWMAN, course_id=4, course_name="Harbor Links", score=71)

    assert await badge_service.award(db_session, "alice", badge) is True
    assert await badge_service.award(db_session, "alice", badge) is False

    badges = await badge_service.list_badges(db_session, "alice")
    assert len(badges) == 1
    assert badges[0].badge_type == BadgeType.LOWMAN
    assert badges[0].course_name == "Harbor Links"
    assert badges[0].score == 71


@pytest.mark.asyncio
async def test_same_badge_type_on_different_courses(db_session):
    await badge_service.award(db_session, "alice", BadgeAward(badge_type=BadgeType.HOLE_IN_ONE, course_id=1))
    await badge_service.award(db_session, "alice", BadgeAward(badge_type=BadgeType.HOLE_IN_ONE, course_id=2))

    badges = await badge_service.list_badges(db_session, "alice")
    assert sorted(b.course_id for b in badges) == [1, 2]


@pytest.mark.asyncio
async def test_course_badge_requires_course(db_session):
    with pytest.raises(ValueError):
        await badge_service.award(db_session, "alice", BadgeAward(badge_type=BadgeType.LOWMAN))


@pytest.mark.asyncio
async def test_award_requires_user(db_session):
    with pytest.raises(ValueError):
        await badge_service.award(db_session, "", BadgeAward(badge_type=BadgeType.ACE))


@pytest.mark.asyncio
async def test_tier_badges_replace_each_other(db_session):
    assert await badge_service.award(db_session, "alice", BadgeAward(badge_type=BadgeType.SCRATCH)) is True
    assert await badge_service.award(db_session, "alice", BadgeAward(badge_type=BadgeType.ACE)) is True
    assert await badge_service.award(db_session, "alice", BadgeAward(badge_type=BadgeType.ACE)) is False

    state = await badge_service.get_tier_state(db_session, "alice")
    assert state.tier == AchievementTier.ACE
    assert state.badge_type == BadgeType.ACE

    badges = await badge_service.list_badges(db_session, "alice")
    assert [b.badge_type for b in badges] == [BadgeType.ACE]
    assert badges[0].course_name == "Multiple Courses"


@pytest.mark.asyncio
async def test_remove_course_badges(db_session):
    for course_id in (1, 2):
        await badge_service.award(db_session, "alice", BadgeAward(badge_type=BadgeType.LOWMAN, course_id=course_id))

    assert await badge_service.remove(db_session, "alice", BadgeType.LOWMAN, course_id=1) == 1
    assert await badge_service.remove(db_session, "alice", BadgeType.LOWMAN) == 1
    assert await badge_service.list_badges(db_session, "alice") == []


@pytest.mark.asyncio
async def test_remove_tier_only_clears_matching_tier(db_session):
    await badge_service.award(db_session, "alice", BadgeAward(badge_type=BadgeType.ACE))

    assert await badge_service.remove(db_session, "alice", BadgeType.SCRATCH) == 0
    assert (await badge_service.get_tier_state(db_session, "alice")).tier == AchievementTier.ACE

    assert await badge_service.remove(db_session, "alice", BadgeType.ACE) == 1
    state = await badge_service.get_tier_state(db_session, "alice")
    assert state.tier == AchievementTier.NONE
    assert state.since is None


@pytest.mark.asyncio
async def test_unknown_user_has_no_tier(db_session):
    state = await badge_service.get_tier_state(db_session, "nobody")
    assert state == badge_service.TierState()
    assert state.badge_type is None
