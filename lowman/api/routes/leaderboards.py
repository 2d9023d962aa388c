"""Leaderboard route handlers."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.database.db import get_db_session
from lowman.models.schemas import LeaderboardResponse, RebuildResponse
from lowman.services import leaderboard_service
from lowman.utils.exceptions import TransientIngestError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/leaderboards", response_model=List[LeaderboardResponse])
async def list_leaderboards(
    region_key: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
):
    """List leaderboards, optionally for one region, most recently updated first."""
    try:
        return await leaderboard_service.list_leaderboards(session, region_key=region_key, limit=limit)
    except Exception as e:
        logger.error(f"Error listing leaderboards: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error listing leaderboards: {str(e)}")


@router.get("/api/leaderboards/{region_key}/{course_id}", response_model=LeaderboardResponse)
async def get_leaderboard(
    region_key: str, course_id: int, session: AsyncSession = Depends(get_db_session)
):
    """Get the top 10 for one course in one region."""
    try:
        leaderboard = await leaderboard_service.get_leaderboard(session, region_key, course_id)
    except Exception as e:
        logger.error(f"Error fetching leaderboard {region_key}/{course_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching leaderboard: {str(e)}")
    if leaderboard is None:
        raise HTTPException(status_code=404, detail="Leaderboard not found")
    return leaderboard


@router.post("/api/leaderboards/rebuild", response_model=RebuildResponse)
async def rebuild_leaderboards(
    region_key: Optional[str] = None, session: AsyncSession = Depends(get_db_session)
):
    """
    Recompute leaderboards from the stored score records.

    Args:
        region_key: Optional - rebuild only this region
    """
    try:
        rebuilt = await leaderboard_service.rebuild_leaderboards(session, region_key=region_key)
        return RebuildResponse(rebuilt=rebuilt)
    except TransientIngestError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Error rebuilding leaderboards: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error rebuilding leaderboards: {str(e)}")
