"""
Health check endpoint with database and checkpoint status
"""

from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from core.config import settings
from core.utils import utc_now
from models.base import CheckpointStatus
from models.checkpoint import LoadCheckpoint
from schemas.api import HealthCheckResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Checkpoint counts per status
    - Number of InProgress checkpoints whose owner stopped heartbeating
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")
        return HealthCheckResponse(database_connected=False)

    result = await db.execute(
        select(LoadCheckpoint.status, func.count()).group_by(LoadCheckpoint.status)
    )
    counts = {CheckpointStatus(status).value: count for status, count in result.all()}

    stale_before = utc_now() - timedelta(seconds=settings.CHECKPOINT_STALE_AFTER_SECONDS)
    stale = await db.scalar(
        select(func.count()).select_from(LoadCheckpoint).where(
            LoadCheckpoint.status == CheckpointStatus.IN_PROGRESS,
            LoadCheckpoint.updated_at < stale_before,
        )
    )

    return HealthCheckResponse(
        database_connected=True,
        checkpoint_counts=counts,
        stale_in_progress=stale or 0,
    )
