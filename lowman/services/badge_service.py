"""
Badge ledger.

Course-scoped badges (lowman, hole_in_one) are rows keyed by
(user_id, badge_type, course_id), so awarding twice is a no-op. Tier badges
(scratch, ace) are not rows at all: they live in the single ``user_tiers``
slot, which makes holding both at once impossible.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database.models import AchievementTier, Badge, BadgeType, UserTier
from lowman.models.schemas import BadgeAward, BadgeResponse
from lowman.services.transactions import run_in_transaction
from lowman.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

TIER_BADGES = {
    AchievementTier.SCRATCH: BadgeType.SCRATCH,
    AchievementTier.ACE: BadgeType.ACE,
}


@dataclass(frozen=True)
class TierState:
    """A user's tier: None, Scratch(since) or Ace(since)."""

    tier: AchievementTier = AchievementTier.NONE
    since: Optional[datetime] = None

    @property
    def badge_type(self) -> Optional[BadgeType]:
        return TIER_BADGES.get(self.tier)


def tier_for_badge(badge_type: BadgeType) -> AchievementTier:
    if badge_type == BadgeType.SCRATCH:
        return AchievementTier.SCRATCH
    if badge_type == BadgeType.ACE:
        return AchievementTier.ACE
    raise ValueError(f"{badge_type.value} is not a tier badge")


# ============================================================================
# Tier slot
# ============================================================================

async def _load_tier_row(
    session: AsyncSession, user_id: str, refresh: bool = True
) -> Optional[UserTier]:
    query = select(UserTier).where(UserTier.user_id == user_id)
    if refresh:
        query = query.execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def get_tier_state(session: AsyncSession, user_id: str) -> TierState:
    """Current tier for a user (NONE if never evaluated)."""
    row = await _load_tier_row(session, user_id)
    if row is None:
        return TierState()
    return TierState(tier=row.tier, since=ensure_utc(row.since))


async def assign_tier_slot(
    session: AsyncSession,
    user_id: str,
    tier: AchievementTier,
    lowman_course_count: Optional[int] = None,
) -> Tuple[TierState, bool]:
    """
    Replace the user's tier inside the caller's transaction (no commit).

    The row is version checked against the copy already loaded in this
    transaction (see get_tier_state), so two concurrent assignments cannot
    both commit from the same stale read.

    Returns:
        Tuple of (previous tier state, whether the tier changed)
    """
    now = utcnow()
    row = await _load_tier_row(session, user_id, refresh=False)
    if row is None:
        previous = TierState()
        row = UserTier(
            user_id=user_id,
            tier=AchievementTier.NONE,
            lowman_course_count=0,
        )
        session.add(row)
    else:
        previous = TierState(tier=row.tier, since=ensure_utc(row.since))

    changed = previous.tier != tier
    if changed:
        row.tier = tier
        row.since = now if tier != AchievementTier.NONE else None
    if lowman_course_count is not None:
        row.lowman_course_count = lowman_course_count
    row.updated_at = now
    await session.flush()
    return previous, changed


# ============================================================================
# Ledger operations
# ============================================================================

async def _find_badge(
    session: AsyncSession, user_id: str, badge_type: BadgeType, course_id: int
) -> Optional[Badge]:
    result = await session.execute(
        select(Badge).where(
            Badge.user_id == user_id,
            Badge.badge_type == badge_type,
            Badge.course_id == course_id,
        )
    )
    return result.scalar_one_or_none()


async def add_course_badge(session: AsyncSession, user_id: str, badge: BadgeAward) -> bool:
    """Insert a course-scoped badge inside the caller's transaction. Returns False if held."""
    if await _find_badge(session, user_id, badge.badge_type, badge.course_id) is not None:
        return False
    session.add(Badge(
        user_id=user_id,
        badge_type=badge.badge_type,
        course_id=badge.course_id,
        course_name=badge.course_name,
        score=badge.score,
        score_id=badge.score_id,
        achieved_at=badge.achieved_at,
    ))
    await session.flush()
    return True


async def award(session: AsyncSession, user_id: str, badge: BadgeAward) -> bool:
    """
    Award a badge to a user.

    Course-scoped badges are upserted on (user_id, badge_type, course_id);
    tier badges replace the user's single tier slot.

    Args:
        session: Database session
        user_id: ID of the user receiving the badge
        badge: Badge to award

    Returns:
        True if the user did not already hold this badge

    Raises:
        ValueError: If user_id is missing or a course badge has no course_id
    """
    if not user_id:
        raise ValueError("user_id is required")

    if badge.badge_type.is_tier:
        tier = tier_for_badge(badge.badge_type)

        async def _assign(s: AsyncSession) -> bool:
            await get_tier_state(s, user_id)
            _, changed = await assign_tier_slot(s, user_id, tier)
            return changed

        changed = await run_in_transaction(session, _assign, operation=f"tier award {user_id}")
        if changed:
            logger.info(f"Tier for {user_id} set to {tier.value}")
        return changed

    if badge.course_id is None:
        raise ValueError(f"course_id is required for {badge.badge_type.value} badges")

    async def _add(s: AsyncSession) -> bool:
        return await add_course_badge(s, user_id, badge)

    created = await run_in_transaction(
        session, _add, operation=f"badge award {user_id}:{badge.badge_type.value}"
    )
    if created:
        logger.info(f"Awarded {badge.badge_type.value} badge to {user_id} (course {badge.course_id})")
    return created


async def remove(
    session: AsyncSession, user_id: str, badge_type: BadgeType, course_id: Optional[int] = None
) -> int:
    """
    Remove badges of a type from a user.

    For course-scoped types, ``course_id`` narrows the removal to one course.
    For tier types, the tier slot is cleared only if it currently holds that tier.

    Returns:
        Number of badges removed
    """
    if not user_id:
        raise ValueError("user_id is required")

    if badge_type.is_tier:
        tier = tier_for_badge(badge_type)

        async def _clear(s: AsyncSession) -> int:
            row = await _load_tier_row(s, user_id)
            if row is None or row.tier != tier:
                return 0
            await assign_tier_slot(s, user_id, AchievementTier.NONE)
            return 1

        return await run_in_transaction(session, _clear, operation=f"tier remove {user_id}")

    async def _delete(s: AsyncSession) -> int:
        stmt = delete(Badge).where(Badge.user_id == user_id, Badge.badge_type == badge_type)
        if course_id is not None:
            stmt = stmt.where(Badge.course_id == course_id)
        result = await s.execute(stmt)
        return result.rowcount or 0

    removed = await run_in_transaction(session, _delete, operation=f"badge remove {user_id}")
    if removed:
        logger.info(f"Removed {removed} {badge_type.value} badge(s) from {user_id}")
    return removed


async def list_badges(session: AsyncSession, user_id: str) -> List[BadgeResponse]:
    """All badges a user holds: course badges in award order, then the tier badge."""
    result = await session.execute(
        select(Badge).where(Badge.user_id == user_id).order_by(Badge.achieved_at.asc(), Badge.id.asc())
    )
    badges = [
        BadgeResponse(
            badge_type=b.badge_type,
            course_id=b.course_id,
            course_name=b.course_name,
            score=b.score,
            achieved_at=ensure_utc(b.achieved_at),
        )
        for b in result.scalars().all()
    ]

    tier = await get_tier_state(session, user_id)
    if tier.badge_type is not None:
        badges.append(BadgeResponse(
            badge_type=tier.badge_type,
            course_name="Multiple Courses",
            achieved_at=tier.since,
        ))
    return badges
