from sqlalchemy import Column, Integer, String, DateTime, Text, Index, BigInteger, UniqueConstraint, text
from models.base import Base, CheckpointStatus, value_enum


class LoadCheckpoint(Base):
    """
    Durable progress record for one attempt of one batch.

    Purpose:
    - Single source of truth for resume decisions
    - Mutual-exclusion gate between workers running the same batch
    - Append-only audit trail (one row per attempt, never deleted)

    Design:
    - ``uq_checkpoint_active_batch`` allows at most one InProgress/Committed
      row per batch_id; inserting against it with ON CONFLICT DO NOTHING is the
      atomic ``begin``
    - Failed rows stay behind; a re-drive inserts a new row with attempt + 1
    - last_applied_offset counts accepted records already merged (chunk boundary)
    """
    __tablename__ = "load_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    # Batch identification
    batch_id = Column(String(64), nullable=False, index=True)
    source_id = Column(String(100), nullable=False, index=True)
    attempt = Column(Integer, nullable=False, default=1)

    # State
    status = Column(value_enum(CheckpointStatus, "checkpoint_status"), nullable=False, default=CheckpointStatus.IN_PROGRESS)
    owner = Column(String(255), nullable=True)
    last_applied_offset = Column(Integer, nullable=False, default=0)

    # Running merge statistics
    inserted_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    historized_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)

    # Error tracking
    failed_step = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("batch_id", "attempt", name="uq_checkpoint_batch_attempt"),
        Index(
            "uq_checkpoint_active_batch",
            "batch_id",
            unique=True,
            postgresql_where=text("status IN ('in_progress', 'committed')"),
            sqlite_where=text("status IN ('in_progress', 'committed')"),
        ),
        Index("idx_checkpoint_status_updated", "status", "updated_at"),
    )
