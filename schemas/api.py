"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, model_validator
from typing import Any, Optional, List, Dict
from datetime import datetime

from core.utils import utc_now
from models.base import CheckpointStatus, PartitionState
from schemas.batch import CheckpointRecord, PartitionHandle

# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(default="healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utc_now)
    database_connected: bool
    checkpoint_counts: Dict[str, int] = Field(default_factory=dict)
    stale_in_progress: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Derive overall health from connectivity and checkpoint state"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.checkpoint_counts.get(CheckpointStatus.FAILED.value, 0) or self.stale_in_progress:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00",
                "database_connected": True,
                "checkpoint_counts": {"committed": 42, "in_progress": 1, "failed": 0},
                "stale_in_progress": 0
            }
        }

# ============================================================================
# Batch Schemas
# ============================================================================

class BatchResponse(BaseModel):
    """Latest checkpoint of a batch plus every attempt"""
    batch_id: str
    status: CheckpointStatus
    latest: CheckpointRecord
    attempts: List[CheckpointRecord] = Field(default_factory=list)

    class Config:
        use_enum_values = True


class BatchListResponse(BaseModel):
    batches: List[CheckpointRecord] = Field(default_factory=list)
    count: int = 0

# ============================================================================
# Partition Schemas
# ============================================================================

class PartitionListResponse(BaseModel):
    table_name: str
    state: Optional[PartitionState] = None
    partitions: List[PartitionHandle] = Field(default_factory=list)
    count: int = 0

    class Config:
        use_enum_values = True


class ErrorResponse(BaseModel):
    """Error body for load-engine exceptions surfaced by the API"""
    error_type: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
