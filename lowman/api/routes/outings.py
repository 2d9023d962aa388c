"""Outing leaderboard route handlers."""

import logging
from typing import List

from fastapi import APIRouter, HTTPException, Request

from lowman.api.routes import READ_RATE_LIMIT, limiter
from lowman.models.schemas import OutingLeaderboardEntry, OutingLeaderboardRequest
from lowman.services import outing_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/outings/leaderboard", response_model=List[OutingLeaderboardEntry])
@limiter.limit(READ_RATE_LIMIT)
async def rank_outing(request: Request, payload: OutingLeaderboardRequest):
    """
    Rank every player of a live outing.

    Nothing is stored; the standings are computed from the posted progress.
    """
    try:
        return outing_service.rank(
            payload.entries, course_par=payload.course_par, format_id=payload.format_id
        )
    except Exception as e:
        logger.error(f"Error ranking outing: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error ranking outing: {str(e)}")
