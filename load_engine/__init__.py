"""
Load engine components: validate staged batches and merge them idempotently.

This package contains everything between the staging area and the target store:

Modules:
    staging: Staging sources (abstract base and SQL-backed implementation)
    partitions: Partition scheme and partition registry lifecycle
    checkpoint: Durable per-batch checkpoint store
    retry: Retry policy, backoff and retry coordinator
    runner: Load orchestrator that drives one batch end to end

Subpackages:
    transformers: Type coercion, validation rules and the validator
    loaders: Merge engine (current rows + SCD2 history) and quarantine writer

Architecture:
    Every batch follows the same path:

    1. Gate - the checkpoint store decides whether this worker owns the batch
    2. Validate - staged records become typed records or quarantined rejects
    3. Merge - key groups are applied in chunks, each chunk committed together
       with the checkpoint offset so an interrupted batch resumes where it stopped
    4. Commit - the checkpoint becomes Committed and the batch is never re-applied

Usage:
    from load_engine.runner import LoadOrchestrator
    from load_engine.staging import SqlStagingSource

Example:
    orchestrator = LoadOrchestrator(
        db_session=session,
        entity_spec=orders_spec,
        staging_source=SqlStagingSource(session),
    )
    report = await orchestrator.run(descriptor)

    print(f"{report.status}: {report.inserted_count} inserted")

Error Handling:
    Components raise exceptions from core.exceptions. Transient store errors
    are retried by the retry coordinator; anything else fails the batch and
    surfaces as a single BatchLoadError.
"""

__all__ = [
    "LoadOrchestrator",
    "StagingSource",
    "SqlStagingSource",
    "Validator",
    "MergeEngine",
    "QuarantineWriter",
    "PartitionScheme",
    "PartitionManager",
    "CheckpointStore",
    "RetryPolicy",
    "RetryCoordinator",
]
