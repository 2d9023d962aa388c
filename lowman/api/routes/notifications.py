"""Notification outbox route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database.db import get_db_session
from lowman.models.schemas import DispatchResponse
from lowman.services.notification_service import get_notification_dispatcher

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/notifications/dispatch", response_model=DispatchResponse)
async def dispatch_notifications(
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db_session),
):
    """Deliver outbox rows left pending by an earlier failure."""
    try:
        dispatcher = get_notification_dispatcher()
        dispatched = await dispatcher.dispatch_pending(session, limit=limit)
        pending = await dispatcher.count_pending(session)
        return DispatchResponse(dispatched=dispatched, pending=pending)
    except Exception as e:
        logger.error(f"Error dispatching notifications: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error dispatching notifications: {str(e)}")
