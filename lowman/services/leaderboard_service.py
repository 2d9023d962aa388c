"""
Regional leaderboard aggregation.

Each (region_key, course_id) leaderboard holds the top 10 of every score ever
applied to it, ordered by (net, gross, created_at). Submissions run as one
optimistic transaction so concurrent posts to the same course never drop an
entry or misreport a new leader.
"""

import logging
import math
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database.models import Leaderboard, LeaderboardSubmission, ScoreRecord
from lowman.models.schemas import LeaderboardEntry, LeaderboardResponse, SubmitResult
from lowman.services.transactions import run_in_transaction
from lowman.utils.constants import LEADERBOARD_SIZE, RANKED_HOLE_COUNT
from lowman.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# Pure helpers
# ============================================================================

def leaderboard_id(region_key: str, course_id: int) -> str:
    """Leaderboard key. Format: {region_key}_{course_id}"""
    return f"{region_key}_{course_id}"


def rank_entries(entries: List[LeaderboardEntry], size: int = LEADERBOARD_SIZE) -> List[LeaderboardEntry]:
    """Sort by (net, gross, created_at) ascending and keep the first ``size``."""
    return sorted(entries, key=lambda e: e.sort_key())[:size]


def is_new_leader(
    top_entries: List[LeaderboardEntry], submitted: LeaderboardEntry, previous_low: float
) -> bool:
    """
    True when the submitted score took rank 1 with a strictly better net.

    Tying the existing low score is not a new leader, even for the same user.
    """
    if not top_entries:
        return False
    leader = top_entries[0]
    return leader.user_id == submitted.user_id and leader.net_score < previous_low


def load_entries(leaderboard: Optional[Leaderboard]) -> List[LeaderboardEntry]:
    if leaderboard is None or not leaderboard.top_entries:
        return []
    return [LeaderboardEntry.model_validate(e) for e in leaderboard.top_entries]


def dump_entries(entries: List[LeaderboardEntry]) -> List[Dict]:
    return [e.model_dump(mode="json") for e in entries]


def to_response(leaderboard: Leaderboard) -> LeaderboardResponse:
    return LeaderboardResponse(
        id=leaderboard.id,
        region_key=leaderboard.region_key,
        course_id=leaderboard.course_id,
        course_name=leaderboard.course_name,
        top_entries=load_entries(leaderboard),
        low_net_score=leaderboard.low_net_score,
        leader_user_id=leaderboard.leader_user_id,
        total_score_count=leaderboard.total_score_count or 0,
        last_updated=leaderboard.last_updated,
    )


# ============================================================================
# Reads
# ============================================================================

async def _load_leaderboard(session: AsyncSession, board_id: str) -> Optional[Leaderboard]:
    result = await session.execute(
        select(Leaderboard)
        .where(Leaderboard.id == board_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_leaderboard(
    session: AsyncSession, region_key: str, course_id: int
) -> Optional[LeaderboardResponse]:
    """Get the leaderboard for a (region, course), or None if nobody has posted there."""
    leaderboard = await _load_leaderboard(session, leaderboard_id(region_key, course_id))
    return to_response(leaderboard) if leaderboard else None


async def list_leaderboards(
    session: AsyncSession, region_key: Optional[str] = None, limit: int = 100
) -> List[LeaderboardResponse]:
    """List leaderboards, most recently updated first."""
    query = select(Leaderboard)
    if region_key:
        query = query.where(Leaderboard.region_key == region_key)
    query = query.order_by(Leaderboard.last_updated.desc(), Leaderboard.id).limit(limit)
    result = await session.execute(query)
    return [to_response(lb) for lb in result.scalars().all()]


async def list_leaderboards_for_player(
    session: AsyncSession, user_id: str, limit: int = 100
) -> List[LeaderboardResponse]:
    """
    Leaderboards where the player appears anywhere in the top entries.

    The top list lives in a JSON column, so candidates are filtered here
    rather than in SQL.
    """
    submitted = (
        select(LeaderboardSubmission.leaderboard_id)
        .where(LeaderboardSubmission.user_id == user_id)
        .distinct()
    )
    result = await session.execute(
        select(Leaderboard).where(Leaderboard.id.in_(submitted)).order_by(Leaderboard.id)
    )
    boards = []
    for leaderboard in result.scalars().all():
        if any(entry.user_id == user_id for entry in load_entries(leaderboard)):
            boards.append(to_response(leaderboard))
    return boards[:limit]


async def count_lowman_courses(session: AsyncSession, user_id: str) -> int:
    """Number of distinct courses where the user currently holds rank 1."""
    result = await session.execute(
        select(func.count(func.distinct(Leaderboard.course_id))).where(
            Leaderboard.leader_user_id == user_id
        )
    )
    return result.scalar() or 0


async def get_submission(session: AsyncSession, score_id: str) -> Optional[LeaderboardSubmission]:
    result = await session.execute(
        select(LeaderboardSubmission)
        .where(LeaderboardSubmission.score_id == score_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# ============================================================================
# Writes
# ============================================================================

async def submit(
    session: AsyncSession,
    region_key: str,
    course_id: int,
    entry: LeaderboardEntry,
    course_name: Optional[str] = None,
) -> SubmitResult:
    """
    Apply one score to the (region, course) leaderboard.

    Runs as a single optimistic transaction retried on conflict. A score whose
    score_id was already applied is not counted again; the outcome recorded
    the first time is returned with ``replayed=True``.

    Args:
        session: Database session
        region_key: Geographic partition key
        course_id: Course ID
        entry: The new leaderboard entry (score_id should be the event id)
        course_name: Display name stored on first creation

    Returns:
        SubmitResult with the committed leaderboard and new-leader flag

    Raises:
        ValueError: If region_key is empty
        TransactionConflictError: If the retry budget runs out
    """
    if not region_key:
        raise ValueError("region_key is required")
    board_id = leaderboard_id(region_key, course_id)

    async def _apply(s: AsyncSession) -> SubmitResult:
        leaderboard = await _load_leaderboard(s, board_id)

        if entry.score_id:
            existing = await get_submission(s, entry.score_id)
            if existing is not None and leaderboard is not None:
                logger.info(f"Score {entry.score_id} already applied to {board_id}, skipping")
                return SubmitResult(
                    leaderboard=to_response(leaderboard),
                    became_new_leader=existing.became_new_leader,
                    leader_changed=existing.leader_changed,
                    previous_leader_id=existing.previous_leader_id,
                    replayed=True,
                )

        now = utcnow()
        if leaderboard is None:
            leaderboard = Leaderboard(
                id=board_id,
                region_key=region_key,
                course_id=course_id,
                course_name=course_name,
                top_entries=[],
                total_score_count=0,
                created_at=now,
            )
            s.add(leaderboard)

        previous_low = leaderboard.low_net_score if leaderboard.low_net_score is not None else math.inf
        previous_leader_id = leaderboard.leader_user_id

        top_entries = rank_entries(load_entries(leaderboard) + [entry])
        became_new_leader = is_new_leader(top_entries, entry, previous_low)
        leader_changed = top_entries[0].user_id != previous_leader_id

        # Assign a new list so the JSON column is flagged dirty
        leaderboard.top_entries = dump_entries(top_entries)
        leaderboard.low_net_score = top_entries[0].net_score
        leaderboard.leader_user_id = top_entries[0].user_id
        leaderboard.total_score_count = (leaderboard.total_score_count or 0) + 1
        leaderboard.last_updated = now
        if course_name and not leaderboard.course_name:
            leaderboard.course_name = course_name

        if entry.score_id:
            s.add(LeaderboardSubmission(
                score_id=entry.score_id,
                leaderboard_id=board_id,
                user_id=entry.user_id,
                became_new_leader=became_new_leader,
                leader_changed=leader_changed,
                previous_leader_id=previous_leader_id,
                applied_at=now,
            ))
        await s.flush()

        return SubmitResult(
            leaderboard=to_response(leaderboard),
            became_new_leader=became_new_leader,
            leader_changed=leader_changed,
            previous_leader_id=previous_leader_id,
        )

    result = await run_in_transaction(session, _apply, operation=f"leaderboard submit {board_id}")
    if result.became_new_leader and not result.replayed:
        logger.info(
            f"New leader on {board_id}: {entry.user_id} with net {entry.net_score} "
            f"(previous leader: {result.previous_leader_id})"
        )
    return result


async def _load_ranked_records(session: AsyncSession, region_key: str, course_id: int) -> List[ScoreRecord]:
    result = await session.execute(
        select(ScoreRecord)
        .where(
            ScoreRecord.region_key == region_key,
            ScoreRecord.course_id == course_id,
            ScoreRecord.hole_count == RANKED_HOLE_COUNT,
        )
        .order_by(ScoreRecord.created_at.asc(), ScoreRecord.event_id.asc())
    )
    return list(result.scalars().all())


async def rebuild_leaderboards(session: AsyncSession, region_key: Optional[str] = None) -> int:
    """
    Recompute leaderboards from the stored score records.

    Only full rounds are ranked. Submission rows are rebuilt with the
    leaderboards so replays of old events stay no-ops; their new-leader flags
    are recomputed in created_at order. Each board is rebuilt in its own
    transaction that re-reads the board's records, so a submit racing the
    rebuild is either included or forces a retry.

    Args:
        session: Database session
        region_key: Optional - rebuild only this region

    Returns:
        Number of leaderboards rebuilt
    """
    query = (
        select(ScoreRecord.region_key, ScoreRecord.course_id)
        .where(ScoreRecord.hole_count == RANKED_HOLE_COUNT)
        .distinct()
    )
    if region_key:
        query = query.where(ScoreRecord.region_key == region_key)
    result = await session.execute(query.order_by(ScoreRecord.region_key, ScoreRecord.course_id))
    boards = [(row.region_key, row.course_id) for row in result.all()]

    logger.info(f"Rebuilding {len(boards)} leaderboards ({region_key or 'all regions'})")

    for board_region, course_id in boards:
        board_id = leaderboard_id(board_region, course_id)

        async def _rebuild(s: AsyncSession, board_id=board_id, board_region=board_region, course_id=course_id):
            leaderboard = await _load_leaderboard(s, board_id)
            board_records = await _load_ranked_records(s, board_region, course_id)
            first = board_records[0]
            if leaderboard is None:
                leaderboard = Leaderboard(
                    id=board_id,
                    region_key=board_region,
                    course_id=course_id,
                    course_name=first.course_name,
                    created_at=utcnow(),
                )
                s.add(leaderboard)

            existing = await s.execute(
                select(LeaderboardSubmission).where(LeaderboardSubmission.leaderboard_id == board_id)
            )
            for submission in existing.scalars().all():
                await s.delete(submission)
            await s.flush()

            top: List[LeaderboardEntry] = []
            low = math.inf
            leader_id = None
            for record in board_records:
                entry = LeaderboardEntry(
                    user_id=record.user_id,
                    display_name=record.display_name or "Unknown",
                    gross_score=record.gross_score,
                    net_score=record.net_score,
                    created_at=record.created_at,
                    score_id=record.event_id,
                )
                top = rank_entries(top + [entry])
                s.add(LeaderboardSubmission(
                    score_id=record.event_id,
                    leaderboard_id=board_id,
                    user_id=record.user_id,
                    became_new_leader=is_new_leader(top, entry, low),
                    leader_changed=top[0].user_id != leader_id,
                    previous_leader_id=leader_id,
                    applied_at=utcnow(),
                ))
                low = top[0].net_score
                leader_id = top[0].user_id

            leaderboard.top_entries = dump_entries(top)
            leaderboard.low_net_score = top[0].net_score
            leaderboard.leader_user_id = top[0].user_id
            leaderboard.total_score_count = len(board_records)
            leaderboard.last_updated = utcnow()
            await s.flush()

        await run_in_transaction(session, _rebuild, operation=f"leaderboard rebuild {board_id}")

    logger.info(f"Rebuilt {len(boards)} leaderboards")
    return len(boards)
