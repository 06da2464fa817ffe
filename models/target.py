from sqlalchemy import Column, Integer, String, DateTime, Index, BigInteger, UniqueConstraint, text
from models.base import Base, JSONType


class TargetRow(Base):
    """
    Current-value row per business key.

    Design:
    - business_key is the canonical JSON encoding of the natural key values
    - attributes_hash + version form the compare-and-swap token for updates
    - last_batch_id / last_source_offset describe which staged record produced
      the current state, which makes replay of the same batch a no-op
    """
    __tablename__ = "target_rows"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    entity = Column(String(100), nullable=False)
    business_key = Column(String(512), nullable=False)
    partition_key = Column(String(32), nullable=False, index=True)

    attributes = Column(JSONType, nullable=False)
    attributes_hash = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False, default=1)

    last_batch_id = Column(String(64), nullable=False)
    last_source_offset = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("entity", "business_key", name="uq_target_entity_key"),
    )


class HistoryRow(Base):
    """
    Slowly-changing-dimension history: one row per attribute version.

    valid_to IS NULL marks the open (current) version; the partial unique index
    guarantees at most one open version per business key.
    """
    __tablename__ = "history_rows"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    entity = Column(String(100), nullable=False)
    business_key = Column(String(512), nullable=False)
    partition_key = Column(String(32), nullable=False)

    attributes = Column(JSONType, nullable=False)
    attributes_hash = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False)

    valid_from = Column(DateTime, nullable=False)
    valid_to = Column(DateTime, nullable=True)

    batch_id = Column(String(64), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("entity", "business_key", "version", name="uq_history_key_version"),
        Index(
            "uq_history_open_version",
            "entity",
            "business_key",
            unique=True,
            postgresql_where=text("valid_to IS NULL"),
            sqlite_where=text("valid_to IS NULL"),
        ),
        Index("idx_history_key_valid_from", "entity", "business_key", "valid_from"),
    )
