from sqlalchemy import Column, Integer, String, DateTime, Index, BigInteger, UniqueConstraint
from models.base import Base, PartitionState, value_enum


class LoadPartition(Base):
    """
    Registry of target-table partitions.

    Design:
    - Bounds are derived deterministically from (table_name, partition_key),
      so concurrent creators always agree on them
    - Bounds never change after creation; only ``state`` moves
      Open -> Sealed -> Archived
    - lower_bound is inclusive, upper_bound exclusive
    """
    __tablename__ = "load_partitions"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    table_name = Column(String(100), nullable=False)
    partition_key = Column(String(32), nullable=False)
    lower_bound = Column(DateTime, nullable=False)
    upper_bound = Column(DateTime, nullable=False)
    state = Column(value_enum(PartitionState, "partition_state"), nullable=False, default=PartitionState.OPEN)

    created_at = Column(DateTime, nullable=False)
    sealed_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("table_name", "partition_key", name="uq_partition_table_key"),
        Index("idx_partition_table_bounds", "table_name", "lower_bound", "upper_bound"),
    )
