"""
Domain models for jobs, connections, runs and checkpoints.

Models:
    base: Shared enums (TriggerPolicy, RunStatus, WriteStrategy, ...)
    job: Job, Connection and DestinationConfig definitions (pydantic)
    checkpoint: JobCheckpoint, the persisted projection of a run
    run: In-memory Run with per-connection outcomes

Usage:
    from models.job import Job, Connection, DestinationConfig
    from models.checkpoint import JobCheckpoint
    from models.base import TriggerPolicy, WriteStrategy

Example:
    job = Job(
        id="daily_sales",
        name="Daily sales",
        query="SELECT * FROM sales WHERE day = CURRENT_DATE",
        schedule="0 6 * * *",
        connection_ids=["store_1", "store_2"],
        destinations=[{"type": "csv", "file_path": "exports/sales.csv"}]
    )

Lifecycle:
    - Job / Connection: owned by the configuration layer, read-only during a run
    - Run: lives in memory for one execution
    - JobCheckpoint: written after every connection, deleted on success
"""

__all__ = [
    "MANUAL_SCHEDULE",
    "TriggerPolicy",
    "RecurrenceType",
    "RunStatus",
    "ConnectionStatus",
    "CheckpointOutcome",
    "WriteStrategy",
    "AdapterCapability",
    "ProgressEventType",
    "Connection",
    "DestinationConfig",
    "Job",
    "JobDefinitions",
    "JobCheckpoint",
    "Run",
    "ConnectionOutcome",
    "DestinationFailure",
]
