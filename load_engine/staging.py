"""
Staging sources: where a batch's raw records are read from
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, List, Optional
import logging

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.utils import canonical_json, sha256_hex, to_naive_utc, utc_now
from models.raw_data import StagedRecordRow
from schemas.batch import BatchDescriptor, StagedRecord

logger = logging.getLogger(__name__)


class StagingSource(ABC):
    """
    Read-only access to the records of a batch.

    Implementations must be re-readable: fetching the same descriptor twice
    returns the same records with the same offsets, in the same order.
    """

    @abstractmethod
    async def fetch(self, descriptor: BatchDescriptor) -> List[StagedRecord]:
        """Return the staged records inside the descriptor's watermark range"""
        pass


class SqlStagingSource(StagingSource):
    """
    Staging area backed by the ``staged_records`` table.

    A batch covers rows of its source_id with
    watermark_start <= ingested_at < watermark_end; offsets are positions in
    id order within that range.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def fetch(self, descriptor: BatchDescriptor) -> List[StagedRecord]:
        result = await self.db.execute(
            select(
                StagedRecordRow.payload,
                StagedRecordRow.source_file,
                StagedRecordRow.ingested_at,
            )
            .where(
                StagedRecordRow.source_id == descriptor.source_id,
                StagedRecordRow.ingested_at >= descriptor.watermark_start,
                StagedRecordRow.ingested_at < descriptor.watermark_end,
            )
            .order_by(StagedRecordRow.id)
        )

        records = [
            StagedRecord(
                fields=row.payload,
                offset=offset,
                load_batch_id=descriptor.batch_id,
                source_file=row.source_file,
                ingest_timestamp=row.ingested_at,
            )
            for offset, row in enumerate(result.all())
        ]

        logger.info(f"Read {len(records)} staged records for batch {descriptor.batch_id[:12]}")
        return records

    async def stage(
        self,
        source_id: str,
        payloads: Iterable[Any],
        source_file: Optional[str] = None,
        ingested_at: Optional[datetime] = None
    ) -> int:
        """
        Land raw payloads into staging (used by local tooling and tests).

        Returns:
            Number of rows written
        """
        ingested_at = to_naive_utc(ingested_at) if ingested_at else utc_now()
        rows = [
            {
                "source_id": source_id,
                "source_file": source_file,
                "payload": payload,
                "ingested_at": ingested_at,
                "content_hash": sha256_hex(canonical_json(payload)),
            }
            for payload in payloads
        ]
        if not rows:
            return 0

        await self.db.execute(insert(StagedRecordRow), rows)
        await self.db.commit()
        return len(rows)
