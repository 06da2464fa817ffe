"""
Partition registry: time-bucketed partitions of a target table and their lifecycle.

Lifecycle: Open -> Sealed -> Archived. Only Open partitions accept writes.
"""

from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import dialect_insert
from core.exceptions import ConfigurationError, PartitionClosedError, PartitionStateError
from core.utils import utc_now
from models.base import PartitionState
from models.partition import LoadPartition
from schemas.batch import PartitionHandle
from schemas.entity import PartitionGrain

logger = logging.getLogger(__name__)


class PartitionScheme:
    """
    Derives partition keys and bounds from a temporal value.

    Keys are ISO strings: ``2024-01-15`` for day grain, ``2024-01`` for month.
    Bounds are half-open: [lower, upper).
    """

    def __init__(self, grain: PartitionGrain = PartitionGrain.DAY):
        try:
            self.grain = PartitionGrain(grain)
        except ValueError:
            raise ConfigurationError(f"Unknown partition grain '{grain}'", context={"partition_grain": grain})

    def key_for(self, value) -> str:
        if isinstance(value, datetime):
            value = value.date()
        if not isinstance(value, date):
            raise TypeError(f"Partition value must be a date or datetime, got {type(value).__name__}")

        if self.grain == PartitionGrain.MONTH:
            return f"{value.year:04d}-{value.month:02d}"
        return value.isoformat()

    def bounds_for(self, partition_key: str) -> Tuple[datetime, datetime]:
        try:
            if self.grain == PartitionGrain.MONTH:
                year, month = (int(part) for part in partition_key.split("-"))
                lower = datetime(year, month, 1)
                upper = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
            else:
                day = date.fromisoformat(partition_key)
                lower = datetime(day.year, day.month, day.day)
                upper = lower + timedelta(days=1)
        except ValueError as e:
            raise ConfigurationError(
                f"Malformed partition key '{partition_key}' for {self.grain.value} grain",
                context={"partition_key": partition_key},
                original_exception=e
            )
        return lower, upper


class PartitionManager:
    """
    Registry of partitions for one target table.

    ensure_partition is idempotent and race-safe: concurrent callers for the
    same key observe exactly one partition.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        table_name: str,
        scheme: Optional[PartitionScheme] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.db = db_session
        self.table_name = table_name
        self.scheme = scheme or PartitionScheme()
        self.clock = clock

    @staticmethod
    def _to_handle(row) -> PartitionHandle:
        return PartitionHandle(
            table_name=row.table_name,
            partition_key=row.partition_key,
            lower_bound=row.lower_bound,
            upper_bound=row.upper_bound,
            state=row.state,
        )

    def _columns(self):
        return select(
            LoadPartition.table_name,
            LoadPartition.partition_key,
            LoadPartition.lower_bound,
            LoadPartition.upper_bound,
            LoadPartition.state,
        ).where(LoadPartition.table_name == self.table_name)

    async def get_partition(self, partition_key: str) -> Optional[PartitionHandle]:
        """Registered partition for the key in any state, or None"""
        result = await self.db.execute(
            self._columns().where(LoadPartition.partition_key == partition_key)
        )
        row = result.first()
        return self._to_handle(row) if row else None

    async def list_partitions(self, state: Optional[PartitionState] = None) -> List[PartitionHandle]:
        query = self._columns()
        if state is not None:
            query = query.where(LoadPartition.state == PartitionState(state))
        result = await self.db.execute(query.order_by(LoadPartition.lower_bound))
        return [self._to_handle(row) for row in result.all()]

    async def _archived_overlap(self, lower: datetime, upper: datetime) -> Optional[PartitionHandle]:
        result = await self.db.execute(
            self._columns().where(
                LoadPartition.state == PartitionState.ARCHIVED,
                LoadPartition.lower_bound < upper,
                LoadPartition.upper_bound > lower,
            ).limit(1)
        )
        row = result.first()
        return self._to_handle(row) if row else None

    async def ensure_partition(self, partition_key: str) -> PartitionHandle:
        """
        Return the partition for the key, creating it Open if absent.

        Archived partitions are excluded from lookups: a key whose range
        overlaps an archived partition raises PartitionClosedError instead of
        resurrecting it.
        """
        existing = await self.get_partition(partition_key)
        if existing and existing.state != PartitionState.ARCHIVED:
            return existing

        lower, upper = self.scheme.bounds_for(partition_key)
        archived = existing or await self._archived_overlap(lower, upper)
        if archived:
            raise PartitionClosedError(
                f"Partition range {partition_key} overlaps archived partition {archived.partition_key}",
                context={
                    "table_name": self.table_name,
                    "partition_key": partition_key,
                    "state": PartitionState.ARCHIVED.value,
                }
            )

        # Concurrent creators race on the (table_name, partition_key) unique constraint
        stmt = dialect_insert(self.db, LoadPartition).values(
            table_name=self.table_name,
            partition_key=partition_key,
            lower_bound=lower,
            upper_bound=upper,
            state=PartitionState.OPEN,
            created_at=self.clock(),
        ).on_conflict_do_nothing(index_elements=["table_name", "partition_key"])
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount:
            logger.info(f"Created partition {self.table_name}/{partition_key}")

        handle = await self.get_partition(partition_key)
        if handle is None or handle.state == PartitionState.ARCHIVED:
            raise PartitionClosedError(
                f"Partition {self.table_name}/{partition_key} was archived concurrently",
                context={"table_name": self.table_name, "partition_key": partition_key}
            )
        return handle

    async def _transition(
        self,
        partition_key: str,
        from_state: PartitionState,
        to_state: PartitionState,
        **values
    ) -> PartitionHandle:
        result = await self.db.execute(
            update(LoadPartition)
            .where(
                LoadPartition.table_name == self.table_name,
                LoadPartition.partition_key == partition_key,
                LoadPartition.state == from_state,
            )
            .values(state=to_state, **values)
        )
        await self.db.commit()

        handle = await self.get_partition(partition_key)
        if handle is None:
            raise PartitionStateError(
                f"Partition {self.table_name}/{partition_key} does not exist",
                context={"table_name": self.table_name, "partition_key": partition_key}
            )

        if result.rowcount == 0 and handle.state != to_state:
            raise PartitionStateError(
                f"Cannot move partition {partition_key} from {handle.state.value} to {to_state.value}",
                context={
                    "table_name": self.table_name,
                    "partition_key": partition_key,
                    "state": handle.state.value,
                }
            )

        if result.rowcount:
            logger.info(f"Partition {self.table_name}/{partition_key}: {from_state.value} -> {to_state.value}")
        return handle

    async def seal(self, partition_key: str) -> PartitionHandle:
        """Open -> Sealed. Sealing a Sealed partition is a no-op."""
        return await self._transition(
            partition_key, PartitionState.OPEN, PartitionState.SEALED, sealed_at=self.clock()
        )

    async def archive(self, partition_key: str) -> PartitionHandle:
        """Sealed -> Archived. Archiving an Archived partition is a no-op."""
        return await self._transition(
            partition_key, PartitionState.SEALED, PartitionState.ARCHIVED, archived_at=self.clock()
        )
