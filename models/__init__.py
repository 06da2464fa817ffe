"""
SQLAlchemy ORM models for database tables.

This package defines the database schema used by the load engine:

Models:
    base: Base declarative class, portable JSON type and shared enums
        (CheckpointStatus, PartitionState)
    raw_data: Staged input records and the rejected-record quarantine
    partition: Partition registry for target tables
    target: Current-value target rows and SCD history rows
    checkpoint: Per-attempt batch checkpoints for resume-on-failure

Database Schema:
    All models inherit from the Base declarative class. JSON columns use JSONB
    on PostgreSQL; partial unique indexes enforce the two core invariants
    (one active checkpoint per batch, one open history row per key).

Usage:
    from models import TargetRow, HistoryRow, LoadCheckpoint, LoadPartition
    from models.base import CheckpointStatus, PartitionState

Relationships:
    - LoadCheckpoint.batch_id → HistoryRow.batch_id / RejectedRecord.batch_id (lineage)
    - LoadPartition.partition_key → TargetRow.partition_key (logical)
"""

from models.base import Base, CheckpointStatus, PartitionState
from models.raw_data import StagedRecordRow, RejectedRecord
from models.partition import LoadPartition
from models.target import TargetRow, HistoryRow
from models.checkpoint import LoadCheckpoint

__all__ = [
    "Base",
    "CheckpointStatus",
    "PartitionState",
    "StagedRecordRow",
    "RejectedRecord",
    "LoadPartition",
    "TargetRow",
    "HistoryRow",
    "LoadCheckpoint",
]
