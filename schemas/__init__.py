"""
Pydantic schemas for the load engine's value types.

This package defines the immutable values passed between load-engine
components and the API response models:

Schemas:
    batch: BatchDescriptor, StagedRecord, TypedRecord, ValidationOutcome,
        MergeResult, PartitionHandle, CheckpointRecord, LoadReport
    entity: EntitySpec and the declared field types / partition grains
    api: API endpoint response schemas

Usage:
    from schemas.batch import BatchDescriptor, LoadReport
    from schemas.entity import EntitySpec

Example:
    descriptor = BatchDescriptor(
        source_id="orders",
        watermark_start="2024-01-01T00:00:00",
        watermark_end="2024-01-02T00:00:00",
    )

    # batch_id is derived, never supplied by hand
    assert len(descriptor.batch_id) == 64
"""

__all__ = [
    "BatchDescriptor",
    "StagedRecord",
    "TypedRecord",
    "RejectReason",
    "ValidationOutcome",
    "MergeResult",
    "PartitionHandle",
    "CheckpointRecord",
    "LoadReport",
    "LoadStatus",
    "EntitySpec",
    "FieldType",
    "PartitionGrain",
]
