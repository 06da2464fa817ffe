"""
Pydantic value types flowing through one batch load
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime
import enum

from core.utils import sha256_hex, to_naive_utc
from models.base import CheckpointStatus, PartitionState


def compute_batch_id(source_id: str, watermark_start: datetime, watermark_end: datetime) -> str:
    """Deterministic idempotency key for a source + watermark range"""
    return sha256_hex(f"{source_id}|{watermark_start.isoformat()}|{watermark_end.isoformat()}")


class BatchDescriptor(BaseModel):
    """
    Immutable identity of one unit of work.

    batch_id is derived from (source_id, watermark_start, watermark_end) and
    deliberately excludes ``attempt``: every attempt of the same range shares
    the same idempotency key.
    """
    source_id: str = Field(..., min_length=1, max_length=100)
    watermark_start: datetime
    watermark_end: datetime
    attempt: int = Field(default=1, ge=1)
    batch_id: str = ""

    @field_validator("watermark_start", "watermark_end")
    @classmethod
    def normalise_watermark(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def derive_batch_id(self):
        if self.watermark_end <= self.watermark_start:
            raise ValueError("watermark_end must be after watermark_start")

        expected = compute_batch_id(self.source_id, self.watermark_start, self.watermark_end)
        if self.batch_id and self.batch_id != expected:
            raise ValueError("batch_id does not match source_id and watermark range")

        object.__setattr__(self, "batch_id", expected)
        return self

    class Config:
        frozen = True


class StagedRecord(BaseModel):
    """
    Raw field-value mapping plus provenance, as read from staging.

    fields holds the payload as staged. A payload that is not a mapping is
    still a StagedRecord; validation rejects it with rule "structure".
    """
    fields: Any
    offset: int = Field(..., ge=0)
    load_batch_id: str
    source_file: Optional[str] = None
    ingest_timestamp: Optional[datetime] = None

    class Config:
        frozen = True


class RejectReason(BaseModel):
    """Why a staged record was rejected (first failing rule)"""
    rule: str
    field: Optional[str] = None
    message: str

    class Config:
        frozen = True


class TypedRecord(BaseModel):
    """
    Validated record ready for merging.

    attributes are JSON-safe (dates as ISO strings, decimals as strings) so the
    same representation is stored, hashed and compared.
    """
    business_key: Tuple[str, ...]
    partition_key: str
    attributes: Dict[str, Any]
    ordering_value: Optional[Any] = None
    source_offset: int

    @property
    def sort_key(self) -> tuple:
        if self.ordering_value is None:
            return (self.source_offset,)
        return (self.ordering_value, self.source_offset)

    class Config:
        frozen = True


class ValidationOutcome(BaseModel):
    """Accepted/rejected partition of a staged record set"""
    accepted: List[TypedRecord] = Field(default_factory=list)
    rejected: List[Tuple[StagedRecord, RejectReason]] = Field(default_factory=list)
    rejected_count: int = 0

    @property
    def total(self) -> int:
        return len(self.accepted) + self.rejected_count


class MergeResult(BaseModel):
    """Counts produced by one Merge Engine apply"""
    inserted_count: int = 0
    updated_count: int = 0
    historized_count: int = 0
    unchanged_count: int = 0
    skipped_count: int = 0

    def combine(self, other: "MergeResult") -> "MergeResult":
        return MergeResult(
            inserted_count=self.inserted_count + other.inserted_count,
            updated_count=self.updated_count + other.updated_count,
            historized_count=self.historized_count + other.historized_count,
            unchanged_count=self.unchanged_count + other.unchanged_count,
            skipped_count=self.skipped_count + other.skipped_count,
        )


class PartitionHandle(BaseModel):
    """Reference to a registered partition of a target table"""
    table_name: str
    partition_key: str
    lower_bound: datetime
    upper_bound: datetime
    state: PartitionState

    @property
    def is_writable(self) -> bool:
        return self.state == PartitionState.OPEN

    class Config:
        frozen = True
        from_attributes = True


class CheckpointRecord(BaseModel):
    """Read model of one checkpoint attempt"""
    batch_id: str
    source_id: str
    attempt: int
    status: CheckpointStatus
    owner: Optional[str] = None
    last_applied_offset: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    historized_count: int = 0
    rejected_count: int = 0
    failed_step: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    class Config:
        from_attributes = True


class LoadStatus(str, enum.Enum):
    """Outcome of LoadOrchestrator.run"""
    COMMITTED = "committed"
    ALREADY_COMMITTED = "already_committed"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


class LoadReport(BaseModel):
    """Result of one run() call, suitable for logging and metrics"""
    batch_id: str
    status: LoadStatus
    attempt: int = 1
    inserted_count: int = 0
    updated_count: int = 0
    historized_count: int = 0
    rejected_count: int = 0
    duration_ms: int = 0
    resumed_from_offset: int = 0
    failed_step: Optional[str] = None
    error: Optional[str] = None

    class Config:
        use_enum_values = True
