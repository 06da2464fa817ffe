"""
Persist rejected staged records with their rejection reason
"""

from typing import List, Tuple
import logging

from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import dialect_insert
from core.utils import utc_now
from models.raw_data import RejectedRecord
from schemas.batch import BatchDescriptor, RejectReason, StagedRecord

logger = logging.getLogger(__name__)


class QuarantineWriter:
    """
    Writes rejects to ``rejected_records``.

    Idempotent per (batch_id, source_offset): writing the rejects of a batch
    again (resume, re-drive) does not duplicate rows.
    """

    def __init__(self, db_session: AsyncSession, chunk_size: int = 500):
        self.db = db_session
        self.chunk_size = chunk_size

    async def write(
        self,
        descriptor: BatchDescriptor,
        rejects: List[Tuple[StagedRecord, RejectReason]]
    ) -> int:
        """
        Returns:
            Number of newly quarantined rows
        """
        if not rejects:
            return 0

        rejected_at = utc_now()
        written = 0

        for i in range(0, len(rejects), self.chunk_size):
            rows = [
                {
                    "batch_id": descriptor.batch_id,
                    "source_id": descriptor.source_id,
                    "source_offset": record.offset,
                    "source_file": record.source_file,
                    "raw_payload": to_jsonable_python(record.fields),
                    "rule": reason.rule,
                    "field_name": reason.field,
                    "message": reason.message,
                    "ingested_at": record.ingest_timestamp,
                    "rejected_at": rejected_at,
                }
                for record, reason in rejects[i:i + self.chunk_size]
            ]
            stmt = dialect_insert(self.db, RejectedRecord).values(rows).on_conflict_do_nothing(
                index_elements=["batch_id", "source_offset"]
            )
            result = await self.db.execute(stmt)
            written += max(result.rowcount, 0)

        await self.db.commit()

        logger.info(f"Quarantined {written} rejected records for batch {descriptor.batch_id[:12]}")
        return written
