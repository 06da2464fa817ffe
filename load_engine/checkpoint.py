"""
Durable per-batch checkpoints: begin gate, progress, commit and failure
"""

from datetime import datetime
from typing import Callable, List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import dialect_insert
from core.exceptions import CheckpointError
from core.utils import utc_now
from models.base import CheckpointStatus
from models.checkpoint import LoadCheckpoint
from schemas.batch import CheckpointRecord, MergeResult

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Checkpoint records keyed by batch_id, one row per attempt.

    State machine per attempt:
        (absent) -> InProgress -> Committed
                            \\-> Failed

    Committed is terminal. A Failed batch can be begun again with a higher
    attempt number, which appends a new row and keeps the old one.

    Every transition commits immediately except ``advance``, which joins the
    caller's transaction so progress lands together with the merged chunk.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.db = db_session
        self.owner = owner or settings.worker_id
        self.clock = clock

    @staticmethod
    def _to_record(row) -> CheckpointRecord:
        return CheckpointRecord.model_validate(dict(row._mapping))

    async def begin(self, batch_id: str, source_id: str, attempt: int = 1) -> bool:
        """
        Atomically create an InProgress checkpoint.

        Returns False, without side effects, when the batch already has an
        InProgress or Committed checkpoint (or this attempt number exists).
        """
        now = self.clock()
        stmt = (
            dialect_insert(self.db, LoadCheckpoint)
            .values(
                batch_id=batch_id,
                source_id=source_id,
                attempt=attempt,
                status=CheckpointStatus.IN_PROGRESS,
                owner=self.owner,
                last_applied_offset=0,
                inserted_count=0,
                updated_count=0,
                historized_count=0,
                rejected_count=0,
                started_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing()
            .returning(LoadCheckpoint.id)
        )
        created = (await self.db.execute(stmt)).scalar_one_or_none() is not None
        await self.db.commit()

        if created:
            logger.info(f"Checkpoint begun for batch {batch_id} (attempt {attempt}, owner {self.owner})")
        return created

    async def get(self, batch_id: str) -> Optional[CheckpointRecord]:
        """Latest attempt for the batch, or None if it was never begun"""
        result = await self.db.execute(
            select(LoadCheckpoint.__table__)
            .where(LoadCheckpoint.batch_id == batch_id)
            .order_by(LoadCheckpoint.attempt.desc())
            .limit(1)
        )
        row = result.first()
        return self._to_record(row) if row else None

    async def history(self, batch_id: str) -> List[CheckpointRecord]:
        """Every attempt for the batch, oldest first"""
        result = await self.db.execute(
            select(LoadCheckpoint.__table__)
            .where(LoadCheckpoint.batch_id == batch_id)
            .order_by(LoadCheckpoint.attempt)
        )
        return [self._to_record(row) for row in result.all()]

    async def list_recent(self, status: Optional[CheckpointStatus] = None, limit: int = 50) -> List[CheckpointRecord]:
        query = select(LoadCheckpoint.__table__)
        if status is not None:
            query = query.where(LoadCheckpoint.status == CheckpointStatus(status))
        result = await self.db.execute(query.order_by(LoadCheckpoint.updated_at.desc()).limit(limit))
        return [self._to_record(row) for row in result.all()]

    def _in_progress(self, batch_id: str):
        return (
            LoadCheckpoint.batch_id == batch_id,
            LoadCheckpoint.status == CheckpointStatus.IN_PROGRESS,
        )

    async def advance(self, batch_id: str, offset: int, result: Optional[MergeResult] = None) -> None:
        """
        Record that accepted records up to ``offset`` are merged.

        Does not commit: call inside the transaction that merged the chunk.
        Also serves as the owner's heartbeat.
        """
        result = result or MergeResult()
        outcome = await self.db.execute(
            update(LoadCheckpoint)
            .where(*self._in_progress(batch_id), LoadCheckpoint.last_applied_offset <= offset)
            .values(
                last_applied_offset=offset,
                inserted_count=LoadCheckpoint.inserted_count + result.inserted_count,
                updated_count=LoadCheckpoint.updated_count + result.updated_count,
                historized_count=LoadCheckpoint.historized_count + result.historized_count,
                updated_at=self.clock(),
            )
        )
        if outcome.rowcount != 1:
            raise CheckpointError(
                "Cannot advance checkpoint: batch is not in progress or offset moved backwards",
                context={"batch_id": batch_id, "operation": "advance", "offset": offset}
            )

    async def commit(self, batch_id: str, rejected_count: int = 0, outcome: Optional[MergeResult] = None) -> CheckpointRecord:
        """
        InProgress -> Committed.

        ``outcome`` adds merge counts not already recorded through advance().
        """
        current = await self.get(batch_id)
        if current is None or current.status != CheckpointStatus.IN_PROGRESS:
            raise CheckpointError(
                "Cannot commit checkpoint that is not in progress",
                context={
                    "batch_id": batch_id,
                    "operation": "commit",
                    "status": current.status.value if current else None,
                }
            )

        outcome = outcome or MergeResult()
        now = self.clock()
        duration_ms = int((now - current.started_at).total_seconds() * 1000)

        result = await self.db.execute(
            update(LoadCheckpoint)
            .where(*self._in_progress(batch_id), LoadCheckpoint.attempt == current.attempt)
            .values(
                status=CheckpointStatus.COMMITTED,
                inserted_count=LoadCheckpoint.inserted_count + outcome.inserted_count,
                updated_count=LoadCheckpoint.updated_count + outcome.updated_count,
                historized_count=LoadCheckpoint.historized_count + outcome.historized_count,
                rejected_count=rejected_count,
                updated_at=now,
                finished_at=now,
                duration_ms=max(duration_ms, 0),
            )
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise CheckpointError(
                "Checkpoint changed state during commit",
                context={"batch_id": batch_id, "operation": "commit"}
            )
        await self.db.commit()

        logger.info(f"Checkpoint committed for batch {batch_id} (attempt {current.attempt})")
        return await self.get(batch_id)

    async def fail(self, batch_id: str, reason: str, failed_step: Optional[str] = None) -> CheckpointRecord:
        """InProgress -> Failed, recording which step failed and why"""
        now = self.clock()
        result = await self.db.execute(
            update(LoadCheckpoint)
            .where(*self._in_progress(batch_id))
            .values(
                status=CheckpointStatus.FAILED,
                failed_step=failed_step,
                error_message=reason,
                updated_at=now,
                finished_at=now,
            )
        )
        await self.db.commit()

        record = await self.get(batch_id)
        if result.rowcount != 1:
            raise CheckpointError(
                "Cannot fail checkpoint that is not in progress",
                context={
                    "batch_id": batch_id,
                    "operation": "fail",
                    "status": record.status.value if record else None,
                }
            )

        logger.warning(f"Checkpoint failed for batch {batch_id} at step {failed_step}: {reason}")
        return record

    async def claim_stale(self, batch_id: str, stale_before: datetime) -> bool:
        """
        Take over an InProgress checkpoint whose owner stopped heartbeating.

        Succeeds for exactly one claimant; the claim refreshes updated_at.
        """
        result = await self.db.execute(
            update(LoadCheckpoint)
            .where(*self._in_progress(batch_id), LoadCheckpoint.updated_at < stale_before)
            .values(owner=self.owner, updated_at=self.clock())
        )
        await self.db.commit()

        claimed = result.rowcount == 1
        if claimed:
            logger.warning(f"Claimed stale checkpoint for batch {batch_id} (new owner {self.owner})")
        return claimed
