"""
Score event ingestion.

Entry point for "round completed" events. Each event is validated, stored,
applied to its course leaderboard, and fanned out to tier evaluation, badges,
the handicap window and the notification outbox. Every derived write is keyed
by the event id, so the delivery mechanism may redeliver an event any number
of times: a replay re-runs each step and changes nothing that already
happened.

Errors are split for the delivery mechanism:
- PermanentIngestError: malformed event, drop it
- TransientIngestError: store failure or conflict budget exhausted, redeliver
"""

import logging
from typing import Any, Callable, List, Mapping, Optional, Union

from pydantic import ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database import db
from lowman.database.models import BadgeType, ScoreRecord
from lowman.models.schemas import (
    BadgeAward,
    BadgeAwardedEvent,
    IngestEffects,
    LeaderboardEntry,
    NewLeaderEvent,
    ScoreEvent,
    TierEvaluation,
)
from lowman.services import (
    badge_service,
    handicap_service,
    leaderboard_service,
    notification_service,
    tier_service,
)
from lowman.services.notification_service import NotificationDispatcher, get_notification_dispatcher
from lowman.services.transactions import run_in_transaction
from lowman.utils.constants import RANKED_HOLE_COUNT
from lowman.utils.exceptions import PermanentIngestError, TransientIngestError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "event_id",
    "user_id",
    "region_key",
    "course_id",
    "course_name",
    "gross_score",
    "net_score",
)


def find_missing_fields(raw: Mapping[str, Any]) -> List[str]:
    """Required fields that are absent, None or blank (snake_case or camelCase keys)."""
    missing = []
    for field in REQUIRED_FIELDS:
        value = raw.get(field, raw.get(to_camel(field)))
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field)
    return missing


def parse_event(raw: Union[ScoreEvent, Mapping[str, Any]]) -> ScoreEvent:
    """
    Validate an inbound event.

    Raises:
        PermanentIngestError: If required fields are missing or any field is malformed
    """
    if isinstance(raw, ScoreEvent):
        return raw
    if not isinstance(raw, Mapping):
        raise PermanentIngestError(f"Score event must be a mapping, got {type(raw).__name__}")

    missing = find_missing_fields(raw)
    if missing:
        raise PermanentIngestError(
            f"Score event missing required fields: {', '.join(missing)}", missing_fields=missing
        )

    try:
        return ScoreEvent.model_validate(raw)
    except ValidationError as e:
        invalid = {".".join(str(part) for part in err["loc"]) for err in e.errors()}
        raise PermanentIngestError(
            f"Invalid score event: {', '.join(sorted(invalid))}", missing_fields=invalid
        ) from e


class IngestService:
    """Applies score events to leaderboards, tiers, badges and handicaps."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher or get_notification_dispatcher()

    def _new_session(self) -> AsyncSession:
        # Looked up per call so a swapped db.AsyncSessionLocal is honoured
        factory = self._session_factory or db.AsyncSessionLocal
        return factory()

    async def ingest(self, raw: Union[ScoreEvent, Mapping[str, Any]]) -> IngestEffects:
        """
        Process one score event end to end.

        Args:
            raw: ScoreEvent or its wire mapping (camelCase or snake_case keys)

        Returns:
            IngestEffects describing what this event did (or already did)

        Raises:
            PermanentIngestError: The event can never be processed
            TransientIngestError: Safe to redeliver
        """
        try:
            event = parse_event(raw)
        except PermanentIngestError as e:
            logger.warning(f"Rejected score event: {e}")
            raise

        try:
            async with self._new_session() as session:
                return await self.process(session, event)
        except TransientIngestError as e:
            logger.error(f"Transient failure ingesting {event.event_id}: {e}", exc_info=True)
            raise
        except DBAPIError as e:
            logger.error(f"Store failure ingesting {event.event_id}: {e}", exc_info=True)
            raise TransientIngestError(f"Store failure ingesting {event.event_id}: {e}") from e

    async def process(self, session: AsyncSession, event: ScoreEvent) -> IngestEffects:
        """Run every step for a validated event on the given session."""
        replayed = await self._record_score(session, event)
        if replayed:
            logger.info(f"Score {event.event_id} already ingested, replaying derived steps")

        ranked = event.hole_count == RANKED_HOLE_COUNT
        leaderboard = None
        became_new_leader = False
        lowman_awarded = False
        tier_changes: List[TierEvaluation] = []

        if ranked:
            result = await leaderboard_service.submit(
                session,
                event.region_key,
                event.course_id,
                LeaderboardEntry(
                    user_id=event.user_id,
                    display_name=event.display_name or "Unknown",
                    gross_score=event.gross_score,
                    net_score=event.net_score,
                    created_at=event.created_at,
                    score_id=event.event_id,
                ),
                course_name=event.course_name,
            )
            leaderboard = result.leaderboard
            became_new_leader = result.became_new_leader

            # A tied net won on gross moves rank 1 without a new-leader event
            if became_new_leader or result.leader_changed:
                evaluation = await tier_service.reevaluate(
                    session,
                    event.user_id,
                    region_key=event.region_key,
                    course_id=event.course_id,
                    score_id=event.event_id,
                )
                lowman_awarded = evaluation.lowman_awarded
                if evaluation.changed:
                    tier_changes.append(evaluation)

                displaced = result.previous_leader_id
                if displaced and displaced != event.user_id:
                    evaluation = await tier_service.reevaluate(session, displaced, score_id=event.event_id)
                    if evaluation.changed:
                        tier_changes.append(evaluation)

            if became_new_leader:
                await self._emit_new_leader(session, event)
        else:
            logger.debug(f"Score {event.event_id} is a {event.hole_count}-hole round, not ranked")

        if event.had_hole_in_one:
            await self._award_hole_in_one(session, event)

        handicap = await handicap_service.record_round(session, event)

        rows = await notification_service.get_notifications_for_score(session, event.event_id)
        notifications = [notification_service.to_event(row) for row in rows]
        await self.dispatcher.dispatch_pending(session, score_id=event.event_id)

        return IngestEffects(
            event_id=event.event_id,
            ranked=ranked,
            leaderboard=leaderboard,
            became_new_leader=became_new_leader,
            lowman_awarded=lowman_awarded,
            tier_changes=tier_changes,
            badges_awarded=[n for n in notifications if isinstance(n, BadgeAwardedEvent)],
            handicap=handicap,
            notifications=notifications,
            replayed=replayed,
        )

    async def _record_score(self, session: AsyncSession, event: ScoreEvent) -> bool:
        """Store the score record. Returns True if it was already stored."""

        async def _store(s: AsyncSession) -> bool:
            if await s.get(ScoreRecord, event.event_id) is not None:
                return True
            s.add(ScoreRecord(
                event_id=event.event_id,
                user_id=event.user_id,
                display_name=event.display_name,
                region_key=event.region_key,
                course_id=event.course_id,
                course_name=event.course_name,
                gross_score=event.gross_score,
                net_score=event.net_score,
                hole_count=event.hole_count,
                had_hole_in_one=event.had_hole_in_one,
                hole_number=event.hole_number,
                course_rating=event.course_rating,
                slope_rating=event.slope_rating,
                par=event.par,
                created_at=event.created_at,
            ))
            await s.flush()
            return False

        return await run_in_transaction(session, _store, operation=f"store score {event.event_id}")

    async def _emit_new_leader(self, session: AsyncSession, event: ScoreEvent) -> None:
        async def _emit(s: AsyncSession) -> None:
            await notification_service.add_notification(s, event.event_id, NewLeaderEvent(
                region_key=event.region_key,
                course_id=event.course_id,
                user_id=event.user_id,
                gross_score=event.gross_score,
                net_score=event.net_score,
            ))

        await run_in_transaction(session, _emit, operation=f"new leader notification {event.event_id}")

    async def _award_hole_in_one(self, session: AsyncSession, event: ScoreEvent) -> bool:
        async def _award(s: AsyncSession) -> bool:
            created = await badge_service.add_course_badge(s, event.user_id, BadgeAward(
                badge_type=BadgeType.HOLE_IN_ONE,
                course_id=event.course_id,
                course_name=event.course_name,
                score=event.gross_score,
                score_id=event.event_id,
                achieved_at=event.created_at,
            ))
            if created:
                await notification_service.add_notification(s, event.event_id, BadgeAwardedEvent(
                    user_id=event.user_id, badge_type=BadgeType.HOLE_IN_ONE, course_id=event.course_id
                ))
            return created

        created = await run_in_transaction(session, _award, operation=f"hole in one {event.event_id}")
        if created:
            hole = f" on hole {event.hole_number}" if event.hole_number else ""
            logger.info(f"Hole in one for {event.user_id} at {event.course_name}{hole}")
        return created


# Global ingest service instance
_ingest_service = IngestService()


def get_ingest_service() -> IngestService:
    """Get the global ingest service instance."""
    return _ingest_service
