"""
Partition administration: listing, sealing and archiving
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from core.exceptions import PartitionStateError
from load_engine.partitions import PartitionManager
from models.base import PartitionState
from schemas.api import PartitionListResponse
from schemas.batch import PartitionHandle
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/partitions", tags=["Partitions"])


def _manager(db: AsyncSession, table_name: str) -> PartitionManager:
    return PartitionManager(db, table_name)


@router.get("/{table_name}", response_model=PartitionListResponse)
async def list_partitions(
    table_name: str,
    state: Optional[PartitionState] = Query(None, description="Filter by partition state"),
    db: AsyncSession = Depends(get_db)
):
    partitions = await _manager(db, table_name).list_partitions(state)
    return PartitionListResponse(
        table_name=table_name,
        state=state,
        partitions=partitions,
        count=len(partitions),
    )


async def _transition(request: Request, db: AsyncSession, table_name: str, partition_key: str, action: str):
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] {action} partition {table_name}/{partition_key}")

    manager = _manager(db, table_name)
    try:
        if action == "seal":
            return await manager.seal(partition_key)
        return await manager.archive(partition_key)
    except PartitionStateError as e:
        status_code = 409 if "state" in e.context else 404
        raise HTTPException(status_code=status_code, detail=e.to_dict())


@router.post("/{table_name}/{partition_key}/seal", response_model=PartitionHandle)
async def seal_partition(table_name: str, partition_key: str, request: Request, db: AsyncSession = Depends(get_db)):
    """Open -> Sealed; sealed partitions reject further writes"""
    return await _transition(request, db, table_name, partition_key, "seal")


@router.post("/{table_name}/{partition_key}/archive", response_model=PartitionHandle)
async def archive_partition(table_name: str, partition_key: str, request: Request, db: AsyncSession = Depends(get_db)):
    """Sealed -> Archived; archived ranges are never recreated"""
    return await _transition(request, db, table_name, partition_key, "archive")
