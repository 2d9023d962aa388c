"""
Cross-course achievement tier evaluation.

A user's tier is a pure function of how many distinct courses they currently
lead. The count is always re-read from the leaderboards, never kept as a
running counter, so a failed or repeated evaluation heals on the next run.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database.models import AchievementTier, BadgeType, Leaderboard
from lowman.models.schemas import AchievementStateResponse, BadgeAward, BadgeAwardedEvent, TierEvaluation
from lowman.services import badge_service, leaderboard_service, notification_service
from lowman.services.transactions import run_in_transaction
from lowman.utils.constants import ACE_LOWMAN_COUNT, SCRATCH_LOWMAN_COUNT

logger = logging.getLogger(__name__)


def tier_for_count(lowman_course_count: int) -> AchievementTier:
    """3+ courses is ace, exactly 2 is scratch, anything else is none."""
    if lowman_course_count >= ACE_LOWMAN_COUNT:
        return AchievementTier.ACE
    if lowman_course_count == SCRATCH_LOWMAN_COUNT:
        return AchievementTier.SCRATCH
    return AchievementTier.NONE


async def reevaluate(
    session: AsyncSession,
    user_id: str,
    region_key: Optional[str] = None,
    course_id: Optional[int] = None,
    score_id: Optional[str] = None,
) -> TierEvaluation:
    """
    Re-derive a user's tier from the leaderboards they currently lead.

    When a triggering (region_key, course_id) is given and the user leads that
    leaderboard, the course lowman badge is awarded in the same transaction.

    Args:
        session: Database session
        user_id: User to evaluate
        region_key: Region of the triggering leaderboard, if any
        course_id: Course of the triggering leaderboard, if any
        score_id: Score that triggered the evaluation; stored on the badge and
            used to key the badge-awarded notifications written with it

    Returns:
        TierEvaluation describing the previous and new tier

    Raises:
        ValueError: If user_id is missing
        TransactionConflictError: If the retry budget runs out
    """
    if not user_id:
        raise ValueError("user_id is required")

    async def _evaluate(s: AsyncSession) -> TierEvaluation:
        # Read the tier row before counting so a concurrent evaluation that
        # commits in between invalidates this attempt's version
        await badge_service.get_tier_state(s, user_id)
        lowman_course_count = await leaderboard_service.count_lowman_courses(s, user_id)

        lowman_awarded = False
        if region_key is not None and course_id is not None:
            leaderboard = await s.get(
                Leaderboard,
                leaderboard_service.leaderboard_id(region_key, course_id),
                populate_existing=True,
            )
            if leaderboard is not None and leaderboard.leader_user_id == user_id:
                lowman_awarded = await badge_service.add_course_badge(s, user_id, BadgeAward(
                    badge_type=BadgeType.LOWMAN,
                    course_id=course_id,
                    course_name=leaderboard.course_name,
                    score=_leader_gross(leaderboard),
                    score_id=score_id,
                ))

        new_tier = tier_for_count(lowman_course_count)
        previous, changed = await badge_service.assign_tier_slot(
            s, user_id, new_tier, lowman_course_count=lowman_course_count
        )

        # Outbox rows commit with the state change so a crash cannot lose them
        if score_id is not None:
            if lowman_awarded:
                await notification_service.add_notification(s, score_id, BadgeAwardedEvent(
                    user_id=user_id, badge_type=BadgeType.LOWMAN, course_id=course_id
                ))
            tier_badge = badge_service.TIER_BADGES.get(new_tier)
            if changed and tier_badge is not None:
                await notification_service.add_notification(s, score_id, BadgeAwardedEvent(
                    user_id=user_id, badge_type=tier_badge
                ))

        return TierEvaluation(
            user_id=user_id,
            previous_tier=previous.tier,
            new_tier=new_tier,
            lowman_course_count=lowman_course_count,
            changed=changed,
            lowman_awarded=lowman_awarded,
        )

    evaluation = await run_in_transaction(session, _evaluate, operation=f"tier reevaluate {user_id}")
    if evaluation.changed:
        logger.info(
            f"Tier for {user_id}: {evaluation.previous_tier.value} -> {evaluation.new_tier.value} "
            f"(lowman at {evaluation.lowman_course_count} courses)"
        )
    return evaluation


def _leader_gross(leaderboard: Leaderboard) -> Optional[int]:
    entries = leaderboard.top_entries or []
    return entries[0].get("gross_score") if entries else None


async def get_achievement_state(session: AsyncSession, user_id: str) -> AchievementStateResponse:
    """
    Derived achievement state: live lowman count and the stored tier slot.

    The stored tier can lag the live count until the next re-evaluation.
    """
    lowman_course_count = await leaderboard_service.count_lowman_courses(session, user_id)
    tier = await badge_service.get_tier_state(session, user_id)
    return AchievementStateResponse(
        user_id=user_id,
        lowman_course_count=lowman_course_count,
        current_tier=tier.tier,
        tier_since=tier.since,
    )
