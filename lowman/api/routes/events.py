"""Score event ingestion and health check route handlers."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from lowman.api.routes import INGEST_RATE_LIMIT, limiter
from lowman.database.db import get_db_session
from lowman.models.schemas import IngestEffects, IngestErrorResponse
from lowman.services.ingest_service import get_ingest_service
from lowman.utils.exceptions import PermanentIngestError, TransientIngestError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/api/events/score",
    response_model=IngestEffects,
    responses={400: {"model": IngestErrorResponse}, 503: {"model": IngestErrorResponse}},
)
@limiter.limit(INGEST_RATE_LIMIT)
async def ingest_score(request: Request, payload: Dict[str, Any] = Body(...)):
    """
    Ingest a completed round.

    The body is the score event with camelCase or snake_case keys. Redelivering
    the same eventId is safe and returns the effects of the first delivery.

    Returns:
        IngestEffects: 200 on success
        400: the event is malformed and must not be redelivered
        503: transient failure, redeliver later
    """
    try:
        return await get_ingest_service().ingest(payload)
    except PermanentIngestError as e:
        raise HTTPException(
            status_code=400,
            detail=IngestErrorResponse(
                detail=str(e), missing_fields=e.missing_fields, retryable=False
            ).model_dump(),
        )
    except TransientIngestError as e:
        raise HTTPException(
            status_code=503,
            detail=IngestErrorResponse(detail=str(e), retryable=True).model_dump(),
        )
    except Exception as e:
        logger.error(f"Error ingesting score event: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error ingesting score event: {str(e)}")


@router.get("/api/health")
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """
    Health check endpoint.

    Returns:
        dict: Service status
    """
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "healthy", "message": "API is running"}
    except Exception as e:
        return {"status": "unhealthy", "database_available": False, "message": f"Error: {str(e)}"}
