# ============================================================================
# File: load_engine/runner.py
# Description: Batch load orchestrator (checkpoint-gated, resumable)
# ============================================================================
"""
Load Orchestrator - drives one batch from staging to committed target rows.

Pipeline for run(descriptor):
1. Pre-flight - entity configuration check (nothing written on failure)
2. Gate - checkpoint begin; Committed batches are a no-op, batches held by
   a live worker are skipped, stale ones are claimed and resumed
3. Read + Validate - staging fetch, validation, quarantine of rejects
4. Partition - ensure every referenced partition exists and is Open
5. Merge - key groups applied in chunks under retry; each chunk commits
   together with the checkpoint offset
6. Commit - checkpoint Committed, LoadReport returned

Any failure after the gate marks the checkpoint Failed and is raised as a
single BatchLoadError carrying the LoadReport.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
import asyncio
import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import BatchLoadError, PartitionClosedError, classify_db_error
from core.utils import utc_now
from load_engine.checkpoint import CheckpointStore
from load_engine.loaders.merge_engine import MergeEngine
from load_engine.loaders.quarantine import QuarantineWriter
from load_engine.partitions import PartitionManager, PartitionScheme
from load_engine.retry import RetryCoordinator, RetryPolicy
from load_engine.staging import StagingSource
from load_engine.transformers.validator import Validator
from models.base import CheckpointStatus
from schemas.batch import (
    BatchDescriptor,
    CheckpointRecord,
    LoadReport,
    LoadStatus,
    MergeResult,
    PartitionHandle,
    TypedRecord,
)
from schemas.entity import EntitySpec

logger = logging.getLogger(__name__)

# (end position, [(partition_key, records)]) - end position counts accepted
# records up to and including this chunk, in apply order
MergeChunk = Tuple[int, List[Tuple[str, List[TypedRecord]]]]


class LoadOrchestrator:
    """
    Checkpoint-gated batch loader.

    Responsibilities:
    - Guarantee at most one live worker per batch
    - Resume interrupted batches from the last committed chunk
    - Apply merges under bounded retry
    - Surface exactly one outcome per run() call
    """

    def __init__(
        self,
        db_session: AsyncSession,
        entity_spec: EntitySpec,
        staging_source: StagingSource,
        validator: Optional[Validator] = None,
        partition_manager: Optional[PartitionManager] = None,
        merge_engine: Optional[MergeEngine] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        quarantine_writer: Optional[QuarantineWriter] = None,
        retry_coordinator: Optional[RetryCoordinator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        chunk_size: Optional[int] = None,
        max_batch_attempts: Optional[int] = None,
        stale_after_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.db = db_session
        self.entity_spec = entity_spec
        self.staging_source = staging_source
        self.validator = validator
        self.partition_manager = partition_manager
        self.merge_engine = merge_engine or MergeEngine(db_session, entity_spec, clock=clock)
        self.checkpoints = checkpoint_store or CheckpointStore(db_session, clock=clock)
        self.quarantine = quarantine_writer or QuarantineWriter(db_session)
        self.retry = retry_coordinator or RetryCoordinator()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.chunk_size = chunk_size or settings.LOAD_CHUNK_SIZE
        self.max_batch_attempts = max_batch_attempts or settings.MAX_BATCH_ATTEMPTS
        self.stale_after = timedelta(seconds=stale_after_seconds or settings.CHECKPOINT_STALE_AFTER_SECONDS)
        self.clock = clock

    def _preflight(self) -> None:
        """Raises ConfigurationError before any checkpoint is touched"""
        self.entity_spec.check()
        if self.validator is None:
            self.validator = Validator(self.entity_spec)
        if self.partition_manager is None:
            self.partition_manager = PartitionManager(
                self.db,
                self.entity_spec.table_name,
                PartitionScheme(self.entity_spec.grain),
                clock=self.clock
            )

    async def run(self, descriptor: BatchDescriptor) -> LoadReport:
        """
        Load one batch.

        Returns:
            LoadReport with status committed, already_committed or in_progress

        Raises:
            ConfigurationError: entity configuration unusable (no checkpoint written)
            BatchLoadError: the batch failed; checkpoint is Failed and
                ``error.report`` describes the failed step
        """
        started = time.perf_counter()
        self._preflight()

        batch_id = descriptor.batch_id
        latest = await self.checkpoints.get(batch_id)

        attempt = descriptor.attempt
        if latest is not None and latest.status == CheckpointStatus.FAILED:
            if latest.attempt >= self.max_batch_attempts:
                report = self._report(descriptor, LoadStatus.FAILED, started, latest, attempt=latest.attempt)
                report.failed_step = "redrive"
                report.error = (
                    f"Batch failed {latest.attempt} times (limit {self.max_batch_attempts}); "
                    f"last failure at {latest.failed_step}: {latest.error_message}"
                )
                raise BatchLoadError(
                    "Batch exceeded its re-drive limit",
                    report=report,
                    context={"batch_id": batch_id, "attempts": latest.attempt}
                )
            attempt = max(attempt, latest.attempt + 1)
            logger.info(f"Re-driving failed batch {batch_id} as attempt {attempt}")

        resume_offset = 0
        if not await self.checkpoints.begin(batch_id, descriptor.source_id, attempt):
            current = await self.checkpoints.get(batch_id)

            if current.status == CheckpointStatus.COMMITTED:
                logger.info(f"Batch {batch_id} already committed; nothing to do")
                return self._report(descriptor, LoadStatus.ALREADY_COMMITTED, started, current)

            stale_before = self.clock() - self.stale_after
            if (
                current.status == CheckpointStatus.IN_PROGRESS
                and current.updated_at < stale_before
                and await self.checkpoints.claim_stale(batch_id, stale_before)
            ):
                attempt = current.attempt
                resume_offset = current.last_applied_offset
                logger.warning(f"Resuming stale batch {batch_id} from offset {resume_offset}")
            else:
                logger.info(f"Batch {batch_id} is being loaded by {current.owner}; skipping")
                return self._report(descriptor, LoadStatus.IN_PROGRESS, started, current)

        # Once begun, the batch must reach Committed or Failed even if the
        # caller is cancelled
        return await asyncio.shield(self._execute(descriptor, attempt, resume_offset, started))

    async def _execute(
        self,
        descriptor: BatchDescriptor,
        attempt: int,
        resume_offset: int,
        started: float
    ) -> LoadReport:
        batch_id = descriptor.batch_id
        step = "staging"

        try:
            records = await self.staging_source.fetch(descriptor)

            step = "validation"
            outcome = self.validator.validate(records)

            step = "quarantine"
            await self.quarantine.write(descriptor, outcome.rejected)

            step = "partition"
            handles = await self._ensure_partitions(outcome.accepted)

            step = "merge"
            await self._merge(descriptor, handles, outcome.accepted, resume_offset)

            step = "commit"
            record = await self.checkpoints.commit(batch_id, rejected_count=outcome.rejected_count)

        except Exception as e:
            await self.db.rollback()
            error = classify_db_error(e, {"batch_id": batch_id, "step": step})
            logger.error(
                f"Batch {batch_id} failed during {step}: {error.message}",
                extra={"error_context": error.to_dict()}
            )

            try:
                record = await self.checkpoints.fail(batch_id, error.message, failed_step=step)
            except Exception as fail_error:
                logger.exception(f"Could not mark batch {batch_id} failed: {fail_error}")
                record = None

            report = self._report(descriptor, LoadStatus.FAILED, started, record, attempt=attempt)
            report.failed_step = step
            report.error = str(error)
            report.resumed_from_offset = resume_offset
            raise BatchLoadError(
                f"Batch failed during {step}",
                report=report,
                context={"batch_id": batch_id, "step": step, "attempt": attempt},
                original_exception=error
            ) from e

        report = self._report(descriptor, LoadStatus.COMMITTED, started, record)
        report.resumed_from_offset = resume_offset
        logger.info(
            f"Batch {batch_id} committed: {report.inserted_count} inserted, "
            f"{report.updated_count} updated, {report.rejected_count} rejected "
            f"in {report.duration_ms}ms"
        )
        return report

    async def _ensure_partitions(self, records: List[TypedRecord]) -> Dict[str, PartitionHandle]:
        handles = {}
        for partition_key in sorted({r.partition_key for r in records}):
            handle = await self.partition_manager.ensure_partition(partition_key)
            if not handle.is_writable:
                raise PartitionClosedError(
                    f"Partition {handle.table_name}/{partition_key} is {handle.state.value}",
                    context={
                        "table_name": handle.table_name,
                        "partition_key": partition_key,
                        "state": handle.state.value,
                    }
                )
            handles[partition_key] = handle
        return handles

    def plan_chunks(self, records: List[TypedRecord]) -> List[MergeChunk]:
        """
        Split accepted records into merge chunks.

        Key groups are never split across chunks, and chunk boundaries are a
        pure function of the records, so a resumed attempt sees the same
        boundaries as the interrupted one.
        """
        placed = sorted(
            MergeEngine.group_by_key(records),
            key=lambda item: (item[1][-1].partition_key, item[0])
        )

        chunks: List[MergeChunk] = []
        current: Dict[str, List[TypedRecord]] = {}
        position = 0
        size = 0

        for _, group in placed:
            current.setdefault(group[-1].partition_key, []).extend(group)
            position += len(group)
            size += len(group)
            if size >= self.chunk_size:
                chunks.append((position, sorted(current.items())))
                current, size = {}, 0

        if current:
            chunks.append((position, sorted(current.items())))
        return chunks

    async def _merge(
        self,
        descriptor: BatchDescriptor,
        handles: Dict[str, PartitionHandle],
        records: List[TypedRecord],
        resume_offset: int
    ) -> None:
        """
        Merge chunk by chunk, skipping chunks at or below resume_offset.

        Each chunk's counts are added to the checkpoint by advance() in the
        chunk's own transaction; commit() reports from there.
        """
        batch_id = descriptor.batch_id

        for end_position, parts in self.plan_chunks(records):
            if end_position <= resume_offset:
                continue

            async def apply_chunk(parts=parts, end_position=end_position) -> None:
                try:
                    result = MergeResult()
                    for partition_key, chunk_records in parts:
                        result = result.combine(
                            await self.merge_engine.apply(batch_id, handles[partition_key], chunk_records)
                        )
                    await self.checkpoints.advance(batch_id, end_position, result)
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise

            await self.retry.with_retry(
                apply_chunk,
                self.retry_policy,
                context={"batch_id": batch_id, "end_position": end_position}
            )

    def _report(
        self,
        descriptor: BatchDescriptor,
        status: LoadStatus,
        started: float,
        record: Optional[CheckpointRecord] = None,
        attempt: Optional[int] = None
    ) -> LoadReport:
        report = LoadReport(
            batch_id=descriptor.batch_id,
            status=status,
            attempt=attempt or (record.attempt if record else descriptor.attempt),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        if record is not None:
            report.inserted_count = record.inserted_count
            report.updated_count = record.updated_count
            report.historized_count = record.historized_count
            report.rejected_count = record.rejected_count
            report.failed_step = record.failed_step
        return report


async def run_batch(
    db_session: AsyncSession,
    entity_spec: EntitySpec,
    staging_source: StagingSource,
    descriptor: BatchDescriptor
) -> LoadReport:
    """Convenience wrapper used by the CLI and API"""
    orchestrator = LoadOrchestrator(db_session, entity_spec, staging_source)
    return await orchestrator.run(descriptor)

