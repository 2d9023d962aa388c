"""
Handicap differential service.

Every round that carries a course and slope rating produces a score
differential. The 20 most recent differentials form the window; the lowest N
of them (N from the lookup table below) are flagged as used and averaged
into the handicap index. The flags are a snapshot of the whole window and
are recomputed every time the window changes.
"""

import logging
import math
from typing import Dict, List, Optional, Sequence, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database.models import HandicapDifferential, PlayerHandicap
from lowman.models.schemas import DifferentialResponse, HandicapResponse, ScoreEvent
from lowman.services.transactions import run_in_transaction
from lowman.utils.constants import (
    DIFFERENTIAL_WINDOW,
    MAX_HANDICAP_INDEX,
    MAX_SLOPE_RATING,
    MIN_SLOPE_RATING,
    STANDARD_SLOPE,
    SUSPICIOUS_SCORE_RATIO,
)
from lowman.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# Differential selection
# ============================================================================

def count_to_use(total_rounds: int) -> int:
    """
    How many of the lowest differentials count toward the index.

    n<3 -> 0, n<=5 -> 1, n<=8 -> 2, n<=11 -> 3, n<=14 -> 4, n<=16 -> 5,
    n<=18 -> 6, n==19 -> 7, n>=20 -> 8
    """
    if total_rounds < 3:
        return 0
    if total_rounds <= 5:
        return 1
    if total_rounds <= 8:
        return 2
    if total_rounds <= 11:
        return 3
    if total_rounds <= 14:
        return 4
    if total_rounds <= 16:
        return 5
    if total_rounds <= 18:
        return 6
    if total_rounds == 19:
        return 7
    return 8


def select_used(differentials: Sequence[float]) -> Set[int]:
    """
    Indices of the differentials that count toward the index.

    Args:
        differentials: Up to 20 differentials, most recent first

    Returns:
        Set of indices into ``differentials``; ties go to the lower index
    """
    ranked = sorted(range(len(differentials)), key=lambda i: (differentials[i], i))
    return set(ranked[:count_to_use(len(differentials))])


def limited_rounds_adjustment(total_rounds: int) -> float:
    """Conservative adjustment applied when only a few rounds are on record."""
    if total_rounds == 3:
        return -2.0
    if total_rounds == 4:
        return -1.0
    if total_rounds == 6:
        return -1.0
    return 0.0


def round_tenth(value: float) -> float:
    """Round to one decimal with halves going up (12.25 -> 12.3), unlike round()."""
    return math.floor(value * 10 + 0.5) / 10


def calculate_handicap_index(differentials: Sequence[float]) -> Optional[float]:
    """
    Handicap index from a window of differentials (most recent first).

    Averages the used differentials, applies the limited-rounds adjustment,
    caps at 54.0 and rounds to one decimal. Returns None under three rounds.
    """
    used = select_used(differentials)
    if not used:
        return None
    average = sum(differentials[i] for i in used) / len(used)
    index = min(average + limited_rounds_adjustment(len(differentials)), MAX_HANDICAP_INDEX)
    return round_tenth(index)


def calculate_differential(
    gross_score: int,
    course_rating: float,
    slope_rating: float,
    holes: int = 18,
    current_handicap_index: Optional[float] = None,
) -> Dict:
    """
    Score differential for one round.

    18 holes: (113 / slope) x (gross - rating)
    9 holes: nine-hole differential plus the expected back nine, which is half
    the current index when one exists, otherwise a mirror of the front nine.

    Returns:
        Dict with differential, is_nine_hole and expected_back_nine
    """
    if holes == 18 and gross_score < course_rating * SUSPICIOUS_SCORE_RATIO:
        logger.info(
            f"Suspicious score: {gross_score} gross on {course_rating} rated course, treating as 9 holes"
        )
        holes = 9

    differential = (STANDARD_SLOPE / slope_rating) * (gross_score - course_rating)
    if holes == 18:
        return {
            "differential": round_tenth(differential),
            "is_nine_hole": False,
            "expected_back_nine": None,
        }

    if current_handicap_index is not None and current_handicap_index > 0:
        expected_back_nine = current_handicap_index / 2
    else:
        expected_back_nine = differential
    return {
        "differential": round_tenth(differential + expected_back_nine),
        "is_nine_hole": True,
        "expected_back_nine": round_tenth(expected_back_nine),
    }


# ============================================================================
# Persistence
# ============================================================================

async def _load_window(session: AsyncSession, user_id: str) -> List[HandicapDifferential]:
    result = await session.execute(
        select(HandicapDifferential)
        .where(HandicapDifferential.user_id == user_id)
        .order_by(HandicapDifferential.played_at.desc(), HandicapDifferential.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def recalculate_window(session: AsyncSession, user_id: str) -> PlayerHandicap:
    """
    Recompute the used flags and index for a user's current window (no commit).

    Records that slid out of the 20-round window lose their flag.
    """
    records = await _load_window(session, user_id)
    window = records[:DIFFERENTIAL_WINDOW]
    values = [r.differential for r in window]
    used = select_used(values)

    for i, record in enumerate(window):
        record.is_used_in_calc = i in used
    for record in records[DIFFERENTIAL_WINDOW:]:
        record.is_used_in_calc = False

    handicap = await session.get(PlayerHandicap, user_id)
    if handicap is None:
        handicap = PlayerHandicap(user_id=user_id)
        session.add(handicap)
    handicap.handicap_index = calculate_handicap_index(values)
    handicap.rounds_in_window = len(window)
    handicap.differentials_used = len(used)
    handicap.updated_at = utcnow()
    await session.flush()
    return handicap


async def record_round(session: AsyncSession, event: ScoreEvent) -> Optional[HandicapResponse]:
    """
    Add a round's differential to the user's history and recompute the window.

    Skips rounds without course/slope rating or with an out-of-range slope.
    A score_id already on record is not added again, but the window is still
    recomputed so a replay after a partial failure converges.

    Returns:
        The user's handicap state, or None if the round was skipped
    """
    if not event.course_rating or not event.slope_rating:
        logger.debug(f"Score {event.event_id} missing courseRating/slopeRating, skipping handicap")
        return None
    if event.slope_rating < MIN_SLOPE_RATING or event.slope_rating > MAX_SLOPE_RATING:
        logger.warning(f"Score {event.event_id} has invalid slope {event.slope_rating}, skipping handicap")
        return None
    if event.gross_score <= 0:
        logger.warning(f"Score {event.event_id} has invalid gross score, skipping handicap")
        return None

    async def _record(s: AsyncSession) -> None:
        # Fresh read; its version guards the recompute against a concurrent round
        current = await s.get(PlayerHandicap, event.user_id, populate_existing=True)
        existing = await s.execute(
            select(HandicapDifferential.id).where(HandicapDifferential.score_id == event.event_id)
        )
        if existing.scalar_one_or_none() is None:
            result = calculate_differential(
                gross_score=event.gross_score,
                course_rating=event.course_rating,
                slope_rating=event.slope_rating,
                holes=event.hole_count,
                current_handicap_index=current.handicap_index if current else None,
            )
            s.add(HandicapDifferential(
                user_id=event.user_id,
                score_id=event.event_id,
                course_id=event.course_id,
                course_name=event.course_name,
                gross_score=event.gross_score,
                differential=result["differential"],
                course_rating=event.course_rating,
                slope_rating=event.slope_rating,
                holes=event.hole_count,
                is_nine_hole=result["is_nine_hole"],
                expected_back_nine=result["expected_back_nine"],
                played_at=event.created_at,
            ))
            await s.flush()
            logger.info(
                f"Handicap entry: {event.course_name} | Gross: {event.gross_score} | "
                f"Rating: {event.course_rating}/{event.slope_rating} | Diff: {result['differential']}"
                f"{' (9-hole)' if result['is_nine_hole'] else ''}"
            )
        await recalculate_window(s, event.user_id)

    await run_in_transaction(session, _record, operation=f"handicap {event.user_id}")
    return await get_handicap(session, event.user_id)


async def get_handicap(session: AsyncSession, user_id: str) -> HandicapResponse:
    """Current index plus the differential window, most recent first."""
    handicap = await session.get(PlayerHandicap, user_id, populate_existing=True)
    records = (await _load_window(session, user_id))[:DIFFERENTIAL_WINDOW]
    return HandicapResponse(
        user_id=user_id,
        handicap_index=handicap.handicap_index if handicap else None,
        rounds_in_window=handicap.rounds_in_window if handicap else 0,
        differentials_used=handicap.differentials_used if handicap else 0,
        differentials=[
            DifferentialResponse(
                score_id=r.score_id,
                differential=r.differential,
                played_at=ensure_utc(r.played_at),
                course_rating=r.course_rating,
                slope_rating=r.slope_rating,
                is_used_in_calc=r.is_used_in_calc,
            )
            for r in records
        ],
    )
