"""
Resilient multi-connection job execution engine.

This package turns a job definition (query + connections + schedule +
trigger policy + destinations) into a bounded-memory, checkpointable run:

Modules:
    checkpoint_store: Durable per-job progress records (atomic file replace)
    memory_monitor: Process memory sampling with psutil
    change_detector: Row fingerprints for onChange triggers and de-duplication
    connection_runner: Runs a job's query on one connection
    buffer: Time/size batching for streamed destinations
    progress: Progress event emitter
    executor: The run state machine
    schedule: Schedule descriptors (cron, intervals, manual)
    health: Connection health probing
    scheduler: APScheduler integration
    runtime: Wiring of all components from settings

Subpackages:
    adapters: Destination adapter contract and the csv, webhook and
        json_file destinations
    connectors: SQLAlchemy query capability

Architecture:
    Scheduler fires -> JobExecutor starts a run -> for each connection in
    order: ConnectionRunner fetches rows -> ChangeDetector gates onChange
    jobs -> rows go to each destination's write strategy -> the checkpoint
    is updated -> the MemoryMonitor is sampled every K connections. On
    success the checkpoint is deleted.

Usage:
    from engine.runtime import EngineRuntime

Example:
    runtime = EngineRuntime.from_settings()
    runtime.load_definitions("jobs.json")
    runtime.start()

    task = runtime.scheduler.fire("daily_sales")
    run = await task
    print(run.summary())
"""

__all__ = [
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "MemoryMonitor",
    "MemorySample",
    "ChangeDetector",
    "ConnectionRunner",
    "StreamBuffer",
    "ProgressEmitter",
    "JobExecutor",
    "JobScheduler",
    "ConnectionHealthProbe",
    "EngineRuntime",
]
