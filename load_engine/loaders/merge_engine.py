"""
Merge validated records into current-value rows and SCD2 history (idempotent)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import dialect_insert
from core.exceptions import ConcurrentWriteError, FatalStoreError, PartitionClosedError
from core.utils import canonical_json, sha256_hex, utc_now
from models.base import PartitionState
from models.partition import LoadPartition
from models.target import HistoryRow, TargetRow
from schemas.batch import MergeResult, PartitionHandle, TypedRecord
from schemas.entity import EntitySpec

logger = logging.getLogger(__name__)


@dataclass
class _CurrentState:
    """Compare-and-swap token for one target row"""
    id: int
    attributes_hash: str
    version: int
    last_batch_id: str
    last_source_offset: int


class MergeEngine:
    """
    Applies typed records to the target store.

    For each business key, records of one batch are applied in order of
    (ordering_value, source_offset). Each record either:
    - inserts the target row and opens history version 1,
    - closes the open history version and opens the next one when the tracked
      attributes changed, or
    - is a no-op when they did not.

    Idempotence under replay: a target row remembers the batch and offset of
    the record that produced it, so records of the same batch up to and
    including that record (in apply order) are skipped.

    apply() never commits; the caller owns the transaction so the merge and the
    checkpoint advance land together.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        entity_spec: EntitySpec,
        clock: Callable[[], datetime] = utc_now
    ):
        self.db = db_session
        self.entity_spec = entity_spec
        self.clock = clock
        self.tracked_fields = entity_spec.effective_tracked_fields()

    @staticmethod
    def encode_key(business_key: Tuple[str, ...]) -> str:
        return canonical_json(list(business_key))

    def tracked_hash(self, attributes: Dict) -> str:
        return sha256_hex(canonical_json({name: attributes.get(name) for name in self.tracked_fields}))

    @classmethod
    def group_by_key(cls, records: List[TypedRecord]) -> List[Tuple[str, List[TypedRecord]]]:
        """Records grouped per encoded business key, each group in apply order"""
        groups: Dict[str, List[TypedRecord]] = {}
        for record in records:
            groups.setdefault(cls.encode_key(record.business_key), []).append(record)
        return [
            (key, sorted(group, key=lambda r: r.sort_key))
            for key, group in sorted(groups.items())
        ]

    async def apply(
        self,
        batch_id: str,
        partition: PartitionHandle,
        records: List[TypedRecord]
    ) -> MergeResult:
        """
        Merge records whose key groups belong to the given partition.

        A key group belongs to the partition of its last record; earlier
        versions keep their own partition_key on the history rows.

        Raises:
            PartitionClosedError: partition is Sealed, Archived or unregistered,
                per the handle or the registry row
            ConcurrentWriteError: another writer changed a key underneath us
        """
        if not partition.is_writable:
            raise self._closed(batch_id, partition, partition.state)
        # The handle may be stale: a seal committed after it was read must win
        state = await self._lock_partition(partition)
        if state != PartitionState.OPEN:
            raise self._closed(batch_id, partition, state)

        result = MergeResult()
        for key, group in self.group_by_key(records):
            if group[-1].partition_key != partition.partition_key:
                raise FatalStoreError(
                    f"Key {key} belongs to partition {group[-1].partition_key}, not {partition.partition_key}",
                    context={"batch_id": batch_id, "business_key": key}
                )
            result = result.combine(await self._apply_key(batch_id, key, group))

        logger.debug(
            f"Merged {len(records)} records into {self.entity_spec.entity}/{partition.partition_key}: "
            f"{result.inserted_count} inserted, {result.updated_count} updated, "
            f"{result.unchanged_count} unchanged, {result.skipped_count} skipped"
        )
        return result

    async def _lock_partition(self, partition: PartitionHandle) -> Optional[PartitionState]:
        """
        Current registry state of the partition, share-locked until the merge
        transaction ends so a concurrent seal waits for it (no-op on SQLite,
        where the writer holds the database lock).
        """
        result = await self.db.execute(
            select(LoadPartition.state)
            .where(
                LoadPartition.table_name == partition.table_name,
                LoadPartition.partition_key == partition.partition_key,
            )
            .with_for_update(read=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _closed(batch_id: str, partition: PartitionHandle, state: Optional[PartitionState]) -> PartitionClosedError:
        state_value = state.value if state is not None else "missing"
        return PartitionClosedError(
            f"Partition {partition.table_name}/{partition.partition_key} is {state_value}",
            context={
                "table_name": partition.table_name,
                "partition_key": partition.partition_key,
                "state": state_value,
                "batch_id": batch_id,
            }
        )

    async def _load_current(self, key: str) -> Optional[_CurrentState]:
        result = await self.db.execute(
            select(
                TargetRow.id,
                TargetRow.attributes_hash,
                TargetRow.version,
                TargetRow.last_batch_id,
                TargetRow.last_source_offset,
            )
            .where(TargetRow.entity == self.entity_spec.entity, TargetRow.business_key == key)
            .with_for_update()
        )
        row = result.first()
        if row is None:
            return None
        return _CurrentState(
            id=row.id,
            attributes_hash=row.attributes_hash,
            version=row.version,
            last_batch_id=row.last_batch_id,
            last_source_offset=row.last_source_offset,
        )

    @staticmethod
    def _after_applied(group: List[TypedRecord], applied_offset: int) -> List[TypedRecord]:
        """Records of the group that come after the one already applied, in apply order"""
        for index, record in enumerate(group):
            if record.source_offset == applied_offset:
                return group[index + 1:]
        # Applied record not in this group (staging changed underneath the batch)
        return [r for r in group if r.source_offset > applied_offset]

    async def _apply_key(self, batch_id: str, key: str, group: List[TypedRecord]) -> MergeResult:
        inserted = updated = historized = unchanged = 0

        current = await self._load_current(key)

        pending = group
        if current is not None and current.last_batch_id == batch_id:
            pending = self._after_applied(group, current.last_source_offset)
        skipped = len(group) - len(pending)

        for record in pending:
            new_hash = self.tracked_hash(record.attributes)
            now = self.clock()

            if current is None:
                current = await self._insert_target(batch_id, key, record, new_hash, now)
                await self._open_version(batch_id, key, record, new_hash, current.version, now)
                inserted += 1
            elif current.attributes_hash == new_hash:
                unchanged += 1
            else:
                historized += await self._close_version(key, now)
                current = await self._swap_target(batch_id, key, record, new_hash, current, now)
                await self._open_version(batch_id, key, record, new_hash, current.version, now)
                updated += 1

        return MergeResult(
            inserted_count=inserted,
            updated_count=updated,
            historized_count=historized,
            unchanged_count=unchanged,
            skipped_count=skipped,
        )

    async def _insert_target(
        self,
        batch_id: str,
        key: str,
        record: TypedRecord,
        new_hash: str,
        now: datetime
    ) -> _CurrentState:
        stmt = (
            dialect_insert(self.db, TargetRow)
            .values(
                entity=self.entity_spec.entity,
                business_key=key,
                partition_key=record.partition_key,
                attributes=record.attributes,
                attributes_hash=new_hash,
                version=1,
                last_batch_id=batch_id,
                last_source_offset=record.source_offset,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["entity", "business_key"])
            .returning(TargetRow.id)
        )
        row_id = (await self.db.execute(stmt)).scalar_one_or_none()
        if row_id is None:
            raise ConcurrentWriteError(
                "Business key was inserted concurrently",
                context={"entity": self.entity_spec.entity, "business_key": key, "batch_id": batch_id}
            )
        return _CurrentState(
            id=row_id,
            attributes_hash=new_hash,
            version=1,
            last_batch_id=batch_id,
            last_source_offset=record.source_offset,
        )

    async def _swap_target(
        self,
        batch_id: str,
        key: str,
        record: TypedRecord,
        new_hash: str,
        current: _CurrentState,
        now: datetime
    ) -> _CurrentState:
        result = await self.db.execute(
            update(TargetRow)
            .where(
                TargetRow.id == current.id,
                TargetRow.attributes_hash == current.attributes_hash,
                TargetRow.version == current.version,
            )
            .values(
                partition_key=record.partition_key,
                attributes=record.attributes,
                attributes_hash=new_hash,
                version=current.version + 1,
                last_batch_id=batch_id,
                last_source_offset=record.source_offset,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            raise ConcurrentWriteError(
                "Target row changed between read and write",
                context={
                    "entity": self.entity_spec.entity,
                    "business_key": key,
                    "expected_version": current.version,
                    "batch_id": batch_id,
                }
            )
        return _CurrentState(
            id=current.id,
            attributes_hash=new_hash,
            version=current.version + 1,
            last_batch_id=batch_id,
            last_source_offset=record.source_offset,
        )

    async def _close_version(self, key: str, now: datetime) -> int:
        if not self.entity_spec.history_enabled:
            return 0
        result = await self.db.execute(
            update(HistoryRow)
            .where(
                HistoryRow.entity == self.entity_spec.entity,
                HistoryRow.business_key == key,
                HistoryRow.valid_to.is_(None),
            )
            .values(valid_to=now)
        )
        return result.rowcount

    async def _open_version(
        self,
        batch_id: str,
        key: str,
        record: TypedRecord,
        new_hash: str,
        version: int,
        now: datetime
    ) -> None:
        if not self.entity_spec.history_enabled:
            return
        await self.db.execute(insert(HistoryRow).values(
            entity=self.entity_spec.entity,
            business_key=key,
            partition_key=record.partition_key,
            attributes=record.attributes,
            attributes_hash=new_hash,
            version=version,
            valid_from=now,
            valid_to=None,
            batch_id=batch_id,
        ))
