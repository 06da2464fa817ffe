from sqlalchemy import Column, String, BigInteger, Integer, DateTime, Text, Index, UniqueConstraint
from models.base import Base, JSONType


class StagedRecordRow(Base):
    """
    Raw records landed by the acquisition layer, read by the SQL staging source.

    Purpose:
    - Immutable input for a batch (re-readable any number of times)
    - ingested_at is the watermark column batches are cut on
    - content_hash supports deduplication by the acquisition layer
    """
    __tablename__ = "staged_records"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    source_id = Column(String(100), nullable=False, index=True)
    source_file = Column(String(500), nullable=True)

    payload = Column(JSONType, nullable=False)

    ingested_at = Column(DateTime, nullable=False, index=True)
    content_hash = Column(String(64), nullable=True, index=True)

    __table_args__ = (
        Index("idx_staged_source_ingested", "source_id", "ingested_at"),
    )


class RejectedRecord(Base):
    """
    Quarantine for staged records that failed validation.

    One row per (batch_id, source_offset): re-running a batch does not
    duplicate rejects.
    """
    __tablename__ = "rejected_records"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    batch_id = Column(String(64), nullable=False, index=True)
    source_id = Column(String(100), nullable=False)
    source_offset = Column(Integer, nullable=False)
    source_file = Column(String(500), nullable=True)

    raw_payload = Column(JSONType, nullable=False)

    rule = Column(String(100), nullable=False)
    field_name = Column(String(100), nullable=True)
    message = Column(Text, nullable=False)

    ingested_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("batch_id", "source_offset", name="uq_rejected_batch_offset"),
    )
