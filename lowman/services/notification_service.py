"""
Outbound notification outbox.

New-leader and badge-awarded events are written as rows in the same
transaction as the state change that produced them, keyed by a dedupe key
derived from the triggering score. Dispatch happens afterwards: rows are
published on a Redis channel and handed to any registered in-process sinks,
then marked dispatched. Rows that could not be delivered stay pending and are
picked up by the next dispatch (including a replay of the same event).
"""

import json
import logging
import os
from typing import Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database.models import EngineNotification, NotificationEventType
from lowman.models.schemas import BadgeAwardedEvent, NewLeaderEvent, NotificationRecord
from lowman.services import redis_service
from lowman.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = os.getenv("NOTIFICATION_CHANNEL", "lowman:notifications")

NotificationSink = Callable[[NotificationEventType, Dict], Awaitable[None]]


def new_leader_key(score_id: str, event: NewLeaderEvent) -> str:
    return f"{score_id}:new_leader:{event.user_id}:{event.region_key}:{event.course_id}"


def badge_awarded_key(score_id: str, event: BadgeAwardedEvent) -> str:
    course = event.course_id if event.course_id is not None else "-"
    return f"{score_id}:badge_awarded:{event.user_id}:{event.badge_type.value}:{course}"


async def add_notification(
    session: AsyncSession,
    score_id: str,
    event: Union[NewLeaderEvent, BadgeAwardedEvent],
) -> Optional[EngineNotification]:
    """
    Write an outbox row inside the caller's transaction (no commit).

    Args:
        session: Database session
        score_id: Event id of the score that produced this notification
        event: Outbound event

    Returns:
        The new row, or None if this exact notification was already recorded
    """
    if isinstance(event, NewLeaderEvent):
        event_type = NotificationEventType.NEW_LEADER
        dedupe_key = new_leader_key(score_id, event)
    else:
        event_type = NotificationEventType.BADGE_AWARDED
        dedupe_key = badge_awarded_key(score_id, event)

    existing = await session.execute(
        select(EngineNotification.id).where(EngineNotification.dedupe_key == dedupe_key)
    )
    if existing.scalar_one_or_none() is not None:
        return None

    notification = EngineNotification(
        dedupe_key=dedupe_key,
        event_type=event_type,
        user_id=event.user_id,
        score_id=score_id,
        payload=event.model_dump(mode="json", by_alias=True),
        created_at=utcnow(),
    )
    session.add(notification)
    await session.flush()
    return notification


def to_event(notification: EngineNotification) -> Union[NewLeaderEvent, BadgeAwardedEvent]:
    if notification.event_type == NotificationEventType.NEW_LEADER:
        return NewLeaderEvent.model_validate(notification.payload)
    return BadgeAwardedEvent.model_validate(notification.payload)


async def get_notifications_for_score(
    session: AsyncSession, score_id: str
) -> List[EngineNotification]:
    """All outbox rows produced by one score event, oldest first."""
    result = await session.execute(
        select(EngineNotification)
        .where(EngineNotification.score_id == score_id)
        .order_by(EngineNotification.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_user_notifications(
    session: AsyncSession, user_id: str, limit: int = 50
) -> List[NotificationRecord]:
    """Most recent outbound events concerning a user."""
    result = await session.execute(
        select(EngineNotification)
        .where(EngineNotification.user_id == user_id)
        .order_by(EngineNotification.id.desc())
        .limit(limit)
    )
    return [
        NotificationRecord(
            id=n.id,
            event_type=n.event_type,
            user_id=n.user_id,
            payload=n.payload,
            dispatched=n.dispatched_at is not None,
        )
        for n in result.scalars().all()
    ]


class NotificationDispatcher:
    """Delivers pending outbox rows to Redis and registered sinks."""

    def __init__(self, channel: str = NOTIFICATION_CHANNEL, publish_to_redis: bool = True):
        self.channel = channel
        self.publish_to_redis = publish_to_redis
        self._sinks: List[NotificationSink] = []

    def register_sink(self, sink: NotificationSink) -> None:
        """
        Register an async callable receiving ``(event_type, payload)``.

        Raises:
            TypeError: If sink is not callable
        """
        if not callable(sink):
            raise TypeError("sink must be callable")
        self._sinks.append(sink)

    def clear_sinks(self) -> None:
        self._sinks = []

    async def _deliver(self, notification: EngineNotification) -> bool:
        delivered = False
        if self.publish_to_redis:
            message = json.dumps({
                "id": notification.id,
                "type": notification.event_type.value,
                "payload": notification.payload,
            })
            delivered = await redis_service.redis_publish(self.channel, message)

        for sink in self._sinks:
            try:
                await sink(notification.event_type, notification.payload)
                delivered = True
            except Exception as e:
                logger.warning(
                    f"Notification sink failed for {notification.dedupe_key}: {e}", exc_info=True
                )
        return delivered

    async def dispatch_pending(
        self, session: AsyncSession, score_id: Optional[str] = None, limit: int = 100
    ) -> int:
        """
        Deliver undispatched outbox rows and mark the delivered ones.

        Args:
            session: Database session
            score_id: Optional - only rows produced by this score
            limit: Maximum rows per call

        Returns:
            Number of rows delivered
        """
        query = select(EngineNotification).where(EngineNotification.dispatched_at.is_(None))
        if score_id is not None:
            query = query.where(EngineNotification.score_id == score_id)
        query = query.order_by(EngineNotification.id.asc()).limit(limit)
        result = await session.execute(query)
        pending = result.scalars().all()

        dispatched = 0
        for notification in pending:
            if await self._deliver(notification):
                notification.dispatched_at = utcnow()
                dispatched += 1
            else:
                logger.warning(f"No delivery channel accepted {notification.dedupe_key}; left pending")
        await session.commit()

        if dispatched:
            logger.info(f"Dispatched {dispatched} notification(s)")
        return dispatched

    async def count_pending(self, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count(EngineNotification.id)).where(EngineNotification.dispatched_at.is_(None))
        )
        return result.scalar() or 0


# Global dispatcher instance
_dispatcher = NotificationDispatcher()


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the global notification dispatcher instance."""
    return _dispatcher
