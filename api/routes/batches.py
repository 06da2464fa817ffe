"""
Batch checkpoint lookup endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from load_engine.checkpoint import CheckpointStore
from models.base import CheckpointStatus
from schemas.api import BatchListResponse, BatchResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/batches", tags=["Batches"])


@router.get("", response_model=BatchListResponse)
async def list_batches(
    status: Optional[CheckpointStatus] = Query(None, description="Filter by checkpoint status"),
    limit: int = Query(50, ge=1, le=500, description="Number of checkpoints to return"),
    db: AsyncSession = Depends(get_db)
):
    """Most recently updated checkpoints, newest first"""
    records = await CheckpointStore(db).list_recent(status=status, limit=limit)
    return BatchListResponse(batches=records, count=len(records))


@router.get("/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    """Checkpoint history of one batch (every attempt, oldest first)"""
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] GET /batches/{batch_id}")

    attempts = await CheckpointStore(db).history(batch_id)
    if not attempts:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")

    latest = attempts[-1]
    return BatchResponse(batch_id=batch_id, status=latest.status, latest=latest, attempts=attempts)
