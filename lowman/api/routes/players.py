"""Player achievement, badge and handicap route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database.db import get_db_session
from lowman.models.schemas import (
    AchievementStateResponse,
    BadgeResponse,
    HandicapResponse,
    LeaderboardResponse,
    NotificationRecord,
    TierEvaluation,
)
from lowman.services import (
    badge_service,
    handicap_service,
    leaderboard_service,
    notification_service,
    tier_service,
)
from lowman.utils.exceptions import TransientIngestError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/players/{user_id}/leaderboards", response_model=List[LeaderboardResponse])
async def get_player_leaderboards(
    user_id: str,
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
):
    """Leaderboards where the player currently appears in the top 10."""
    try:
        return await leaderboard_service.list_leaderboards_for_player(session, user_id, limit=limit)
    except Exception as e:
        logger.error(f"Error fetching leaderboards for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching player leaderboards: {str(e)}")


@router.get("/api/players/{user_id}/badges", response_model=List[BadgeResponse])
async def get_player_badges(user_id: str, session: AsyncSession = Depends(get_db_session)):
    """Course badges plus the current tier badge, if any."""
    try:
        return await badge_service.list_badges(session, user_id)
    except Exception as e:
        logger.error(f"Error fetching badges for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching badges: {str(e)}")


@router.get("/api/players/{user_id}/achievements", response_model=AchievementStateResponse)
async def get_player_achievements(user_id: str, session: AsyncSession = Depends(get_db_session)):
    """Live lowman course count and the stored tier."""
    try:
        return await tier_service.get_achievement_state(session, user_id)
    except Exception as e:
        logger.error(f"Error fetching achievements for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching achievements: {str(e)}")


@router.post("/api/players/{user_id}/tier/reevaluate", response_model=TierEvaluation)
async def reevaluate_player_tier(user_id: str, session: AsyncSession = Depends(get_db_session)):
    """
    Re-derive the player's tier from the current leaderboards.

    Used by the periodic self-heal job after partial failures.
    """
    try:
        return await tier_service.reevaluate(session, user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransientIngestError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Error re-evaluating tier for {user_id}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error re-evaluating tier: {str(e)}")


@router.get("/api/players/{user_id}/handicap", response_model=HandicapResponse)
async def get_player_handicap(user_id: str, session: AsyncSession = Depends(get_db_session)):
    """Handicap index and the 20 most recent differentials."""
    try:
        return await handicap_service.get_handicap(session, user_id)
    except Exception as e:
        logger.error(f"Error fetching handicap for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching handicap: {str(e)}")


@router.get("/api/players/{user_id}/notifications", response_model=List[NotificationRecord])
async def get_player_notifications(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
):
    """Most recent outbound events concerning the player."""
    try:
        return await notification_service.get_user_notifications(session, user_id, limit=limit)
    except Exception as e:
        logger.error(f"Error fetching notifications for {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching notifications: {str(e)}")
