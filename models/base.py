from sqlalchemy import JSON, Enum
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, generic JSON elsewhere (SQLite for local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class CheckpointStatus(str, enum.Enum):
    """Batch checkpoint status"""
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    FAILED = "failed"


class PartitionState(str, enum.Enum):
    """Partition lifecycle state"""
    OPEN = "open"
    SEALED = "sealed"
    ARCHIVED = "archived"


def value_enum(enum_cls, name: str) -> Enum:
    """Enum column storing the member values ("in_progress"), not the member names."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
