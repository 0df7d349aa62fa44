# ============================================================================
# File: engine/executor.py
# Description: Checkpointed, memory-bounded multi-connection job execution
# ============================================================================
"""
Job Executor - runs one job across its connections.

This module provides the run state machine with:
- Sequential, checkpoint-aware iteration over the job's connections
- Per-destination write strategies (progressive, streamed, batch-at-end)
- Connection and destination failures isolated and aggregated on the Run
- Memory sampling every K connections with a resumable controlled stop
- ``onChange`` gating through content fingerprints
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set
import logging

from core.exceptions import (
    ConfigurationError,
    ConnectionExecutionError,
    EngineException,
    MemoryThresholdExceededError,
)
from engine.adapters.base import ConnectionRows, DestinationAdapter, Row, WriteContext
from engine.adapters.registry import AdapterRegistry
from engine.buffer import StreamBuffer
from engine.change_detector import (
    ChangeDetector,
    combine_fingerprints,
    deduplicate_entries,
    deduplicate_rows,
    fingerprint,
)
from engine.checkpoint_store import CheckpointStore
from engine.connection_runner import ConnectionRunner
from engine.memory_monitor import MemoryMonitor
from engine.progress import ProgressEmitter
from engine.retry import send_with_retry
from models.base import (
    AdapterCapability,
    CheckpointOutcome,
    ConnectionStatus,
    RunStatus,
    TriggerPolicy,
    WriteStrategy,
)
from models.job import Connection, DestinationConfig, Job
from models.run import ConnectionOutcome, DestinationFailure, Run

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class DestinationPlan:
    """One destination of a run with its adapter and selected write strategy"""
    config: DestinationConfig
    adapter: DestinationAdapter
    strategy: WriteStrategy
    buffer: Optional[StreamBuffer] = None
    prepared: bool = False

    @property
    def type(self) -> str:
        return self.config.type

    def supports(self, capability: AdapterCapability) -> bool:
        return self.adapter.supports(capability)


class StreamedDeliveries:
    """
    Connections whose rows still sit in streamed buffers.

    A connection is recorded completed in the checkpoint only once every
    streamed destination it was handed to has flushed it, so a crash or a
    failed final flush leaves it to be re-run on resume.
    """

    def __init__(self, store: CheckpointStore, job_id: str):
        self.store = store
        self.job_id = job_id
        self._owed: Dict[str, Set[DestinationPlan]] = {}

    def expect(self, connection_id: str, plans: Sequence[DestinationPlan]) -> None:
        self._owed[connection_id] = set(plans)

    async def delivered(self, plan: DestinationPlan, entries: Sequence[ConnectionRows]) -> None:
        for entry in entries:
            owed = self._owed.get(entry.connection.id)
            if owed is None:
                continue
            owed.discard(plan)
            if not owed:
                del self._owed[entry.connection.id]
                await self.store.record_connection_result(
                    self.job_id, entry.connection.id, CheckpointOutcome.COMPLETED
                )

    @property
    def owed(self) -> Set[str]:
        return set(self._owed)


class JobExecutor:
    """
    Orchestrates one run of a job.

    Responsibilities:
    - Validate destinations before anything runs
    - Query connections in configured order through the ConnectionRunner
    - Route rows to each destination's write strategy
    - Record every connection outcome in the checkpoint store
    - Stop early (resumably) when the memory monitor reports pressure
    - Emit progress events for every state transition

    Nothing raised by a connection or destination escapes ``execute``; the
    returned Run carries the aggregated errors.
    """

    def __init__(
        self,
        store: CheckpointStore,
        runner: ConnectionRunner,
        registry: AdapterRegistry,
        monitor: MemoryMonitor,
        detector: Optional[ChangeDetector] = None,
        emitter: Optional[ProgressEmitter] = None,
        resume_enabled: bool = False,
        memory_check_interval: int = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        stream_flush_interval: float = 10.0,
        stream_batch_size: int = 150
    ):
        self.store = store
        self.runner = runner
        self.registry = registry
        self.monitor = monitor
        self.detector = detector or ChangeDetector()
        self.emitter = emitter or ProgressEmitter()
        self.resume_enabled = resume_enabled
        self.memory_check_interval = max(1, memory_check_interval)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.stream_flush_interval = stream_flush_interval
        self.stream_batch_size = stream_batch_size

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def plan_destinations(self, job: Job, connections: Sequence[Connection]) -> List[DestinationPlan]:
        """
        Resolve adapters and write strategies for every destination.

        Raises:
            ConfigurationError: Unknown destination type, unsupported strategy,
                missing destination fields, or no connections to run
        """
        if not connections:
            raise ConfigurationError(
                f"Job {job.id} has no connections to run",
                context={"job_id": job.id, "connection_ids": job.connection_ids}
            )

        plans = []
        for config in job.destinations:
            adapter = self.registry.get(config.type)
            adapter.validate_config(config)
            plans.append(DestinationPlan(config, adapter, adapter.select_strategy(config)))
        return plans

    # ------------------------------------------------------------------
    # Destination writes
    # ------------------------------------------------------------------

    async def _call_adapter(self, plan: DestinationPlan, context: WriteContext, method: Callable[..., Awaitable[Any]], *args):
        if not plan.prepared:
            await plan.adapter.prepare(plan.config, context)
            plan.prepared = True
        return await method(*args, plan.config, context)

    async def _send(self, plan: DestinationPlan, context: WriteContext, method: Callable[..., Awaitable[Any]], *args) -> None:
        await send_with_retry(
            partial(self._call_adapter, plan, context, method, *args),
            description=f"{plan.type} {method.__name__}",
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            context={"destination_type": plan.type, "job_id": context.job_id, "connection_id": context.connection_id}
        )

    async def _deliver_entries(self, plan: DestinationPlan, context: WriteContext, entries: List[ConnectionRows]) -> None:
        """Write per-connection entries with the adapter's best aggregate method"""
        if plan.supports(AdapterCapability.SEND_MULTI_CONNECTION):
            await self._send(plan, context, plan.adapter.send_multi_connection, entries)
            return
        for entry in entries:
            if entry.rows:
                entry_context = context.for_connection(entry.connection, len(entry.rows))
                await self._send(plan, entry_context, plan.adapter.send, entry.rows)

    def _record_destination_failure(self, run: Run, plan: DestinationPlan, error: EngineException, connection_id: Optional[str]) -> None:
        run.destination_failures.append(DestinationFailure(plan.type, error.summary, connection_id))
        logger.error(
            f"Destination {plan.type} failed for job {run.job_id}"
            f" ({connection_id or 'all connections'}): {error.summary}",
            extra={"error_context": error.to_dict()}
        )

    async def _write_progressive(
        self,
        plans: List[DestinationPlan],
        connection: Connection,
        rows: List[Row],
        context: WriteContext,
        run: Run
    ) -> bool:
        success = True
        connection_context = context.for_connection(connection, len(rows))
        for plan in plans:
            if plan.strategy != WriteStrategy.PROGRESSIVE:
                continue
            try:
                await self._send(plan, connection_context, plan.adapter.send_progressive, connection, rows)
            except EngineException as e:
                self._record_destination_failure(run, plan, e, connection.id)
                success = False
        return success

    async def _write_batches(self, plans: List[DestinationPlan], entries: List[ConnectionRows], context: WriteContext, run: Run) -> None:
        if not entries:
            logger.info(f"No connection results for job {run.job_id}, skipping batch destinations")
            return
        deduplicated = deduplicate_entries(entries)
        for plan in plans:
            if plan.strategy != WriteStrategy.BATCH_AT_END:
                continue
            try:
                if plan.supports(AdapterCapability.SEND_MULTI_CONNECTION):
                    await self._send(plan, context, plan.adapter.send_multi_connection, deduplicated)
                else:
                    rows = deduplicate_rows(row for entry in deduplicated for row in entry.rows)
                    await self._send(plan, context, plan.adapter.send, rows)
            except EngineException as e:
                self._record_destination_failure(run, plan, e, None)

    async def _deliver_streamed(
        self,
        plan: DestinationPlan,
        context: WriteContext,
        deliveries: StreamedDeliveries,
        entries: List[ConnectionRows]
    ) -> None:
        await self._deliver_entries(plan, context, entries)
        await deliveries.delivered(plan, entries)

    def _start_buffers(self, plans: List[DestinationPlan], context: WriteContext, deliveries: StreamedDeliveries) -> None:
        for plan in plans:
            if plan.strategy == WriteStrategy.STREAMED:
                plan.buffer = StreamBuffer(
                    partial(self._deliver_streamed, plan, context, deliveries),
                    name=plan.type,
                    flush_interval=self.stream_flush_interval,
                    batch_size=self.stream_batch_size
                )
                plan.buffer.start()

    async def _close_buffers(self, plans: List[DestinationPlan], run: Run) -> None:
        """Final flush of every streamed destination"""
        for plan in plans:
            if plan.buffer is None:
                continue
            error = await plan.buffer.close()
            if error:
                run.destination_failures.append(DestinationFailure(plan.type, error))
                logger.error(f"Streamed destination {plan.type} failed for job {run.job_id}: {error}")

    async def _requery_for_batch(self, job: Job, connection: Connection, run: Run, outcome: ConnectionOutcome) -> Optional[ConnectionRows]:
        """
        Fetch a connection completed by an earlier run again, so batch
        destinations receive the whole job's results rather than only the
        connections this run executed.

        Returns:
            The connection's rows, or None if the query failed (the connection
            is then recorded failed)
        """
        try:
            rows = await self.runner.run(connection, job)
        except ConnectionExecutionError as e:
            await self._connection_failed(run, outcome, e.summary, connection)
            run.errors.append(f"{connection.display_name}: {e.summary}")
            logger.warning(
                f"Re-query of {connection.id} for batch destinations failed: {e.summary}",
                extra={"error_context": e.to_dict()}
            )
            return None
        logger.info(f"Re-queried {connection.id} ({len(rows)} rows) for batch destinations")
        return ConnectionRows(connection=connection, rows=rows)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(self, job: Job, connections: Sequence[Connection], resume: Optional[bool] = None) -> Run:
        """
        Run the job once.

        Args:
            job: Job definition
            connections: The job's connections, in configured order
            resume: Skip connections completed by an interrupted earlier run;
                defaults to the executor's ``resume_enabled`` setting

        Returns:
            The finished Run (status completed or failed)
        """
        resume = self.resume_enabled if resume is None else resume
        connections = list(connections)
        run = Run(job_id=job.id, job_name=job.name, total_connections=len(connections), resumed=resume)

        try:
            plans = self.plan_destinations(job, connections)
        except ConfigurationError as e:
            logger.error(
                f"Job {job.id} not run: {e.summary}",
                extra={"error_context": e.to_dict()}
            )
            run.errors.append(e.summary)
            run.finish(RunStatus.FAILED)
            return run

        try:
            await self._run(job, connections, plans, run, resume)
        except Exception as e:
            logger.exception(f"Unexpected error while running job {job.id}")
            run.errors.append(f"Unexpected error: {e}")
            run.finish(RunStatus.FAILED)
            self.store.forget(job.id)
            self.emitter.job_failed(run, reason="unexpected_error")
        finally:
            for plan in plans:
                if plan.buffer is not None:
                    plan.buffer.cancel()

        return run

    async def _run(
        self,
        job: Job,
        connections: List[Connection],
        plans: List[DestinationPlan],
        run: Run,
        resume: bool
    ) -> None:
        run.status = RunStatus.RUNNING
        checkpoint = await self.store.begin_run(job.id, job.name, [c.id for c in connections], resume)
        context = WriteContext(job_id=job.id, job_name=job.name, group=job.group, run_time=run.started_at)

        on_change = job.trigger == TriggerPolicy.ON_CHANGE
        if on_change:
            self.detector.seed(ChangeDetector.key(job.id), job.last_hash)
            for connection_id, connection_hash in job.connection_hashes.items():
                self.detector.seed(ChangeDetector.key(job.id, connection_id), connection_hash)

        per_connection_plans = [p for p in plans if p.strategy != WriteStrategy.BATCH_AT_END]
        batch_plans = [p for p in plans if p.strategy == WriteStrategy.BATCH_AT_END]
        streamed_plans = [p for p in plans if p.strategy == WriteStrategy.STREAMED]

        skipped = sum(1 for c in connections if resume and checkpoint.is_completed(c.id))
        logger.info(
            f"Starting job {job.id} ({job.name}): {len(connections)} connections, "
            f"{len(plans)} destinations, resume={resume}, skipping {skipped}"
        )
        deliveries = StreamedDeliveries(self.store, job.id)
        self._start_buffers(plans, context, deliveries)
        self.emitter.job_started(run, skipped=skipped)

        retained: List[ConnectionRows] = []
        connection_hashes: Dict[str, str] = {}
        pending_commits: Dict[str, str] = {}
        processed = 0

        for index, connection in enumerate(connections):
            outcome = run.outcome(connection.id, connection.display_name)

            if resume and checkpoint.is_completed(connection.id):
                if batch_plans:
                    entry = await self._requery_for_batch(job, connection, run, outcome)
                    if entry is None:
                        retained.append(ConnectionRows(connection=connection, failed_message=outcome.error))
                        continue
                    connection_hashes[connection.id] = fingerprint(entry.rows)
                    retained.append(entry)
                outcome.status = ConnectionStatus.SKIPPED
                logger.info(f"Skipping {connection.id}: completed by an earlier run")
                self.emitter.connection_completed(run, outcome, skipped=True)
                continue

            outcome.status = ConnectionStatus.RUNNING
            outcome.started_at = _utcnow()
            self.emitter.connection_started(run, connection, index)

            try:
                rows = await self.runner.run(connection, job)
            except ConnectionExecutionError as e:
                await self._connection_failed(run, outcome, e.summary, connection)
                run.errors.append(f"{connection.display_name}: {e.summary}")
                logger.warning(
                    f"Connection {connection.id} failed for job {job.id}: {e.summary}",
                    extra={"error_context": e.to_dict()}
                )
                entry = ConnectionRows(connection=connection, failed_message=e.summary)
                if batch_plans:
                    retained.append(entry)
                for plan in streamed_plans:
                    if plan.supports(AdapterCapability.SEND_MULTI_CONNECTION):
                        await plan.buffer.add(entry)
            else:
                outcome.rows_processed = len(rows)
                self.emitter.connection_progress(run, connection, len(rows), "Rows fetched")

                connection_hash = fingerprint(rows)
                connection_hashes[connection.id] = connection_hash
                entry = ConnectionRows(connection=connection, rows=rows)

                changed = True
                if on_change and per_connection_plans:
                    changed = self.detector.has_changed(ChangeDetector.key(job.id, connection.id), connection_hash)
                    outcome.unchanged = not changed

                written = True
                if changed:
                    written = await self._write_progressive(plans, connection, rows, context, run)
                    if on_change and per_connection_plans:
                        pending_commits[connection.id] = connection_hash
                if batch_plans:
                    retained.append(entry)

                streamed_to = streamed_plans if changed and rows else []
                if written:
                    outcome.status = ConnectionStatus.COMPLETED
                    outcome.completed_at = _utcnow()
                    if streamed_to:
                        deliveries.expect(connection.id, streamed_to)
                    else:
                        await self.store.record_connection_result(job.id, connection.id, CheckpointOutcome.COMPLETED)
                    self.emitter.connection_completed(run, outcome)
                else:
                    # Recorded as failed so a resumed run writes this connection again
                    pending_commits.pop(connection.id, None)
                    await self._connection_failed(run, outcome, "Destination write failed", connection)
                for plan in streamed_to:
                    await plan.buffer.add(entry)

            self.emitter.job_progress(run)
            processed += 1

            if processed % self.memory_check_interval == 0:
                sample = self.monitor.sample()
                if self.monitor.exceeds_threshold(sample):
                    run.memory_stopped = True
                    error = MemoryThresholdExceededError(
                        "Memory threshold exceeded, stopping run",
                        context={
                            "job_id": job.id,
                            "resident_mb": sample.resident_mb,
                            "threshold_mb": sample.threshold_mb,
                            "processed_connections": processed
                        }
                    )
                    run.errors.append(
                        f"Memory threshold exceeded ({sample.resident_mb:.0f} MB > {sample.threshold_mb:.0f} MB)"
                    )
                    logger.warning(error.message, extra={"error_context": error.to_dict()})
                    break

        await self._close_buffers(plans, run)
        undelivered = deliveries.owed
        for connection_id in sorted(undelivered):
            # Left for the next run; the streamed destination never received these rows
            await self.store.record_connection_result(job.id, connection_id, CheckpointOutcome.FAILED)

        run.fingerprint = combine_fingerprints(connection_hashes.values())
        run_key = ChangeDetector.key(job.id)
        if batch_plans:
            if on_change and not self.detector.has_changed(run_key, run.fingerprint):
                logger.info(f"Job {job.id} result unchanged, skipping batch destinations")
                for outcome in run.outcomes.values():
                    if outcome.status == ConnectionStatus.COMPLETED:
                        outcome.unchanged = True
            else:
                await self._write_batches(plans, retained, context, run)
        retained.clear()

        failed_writes = {f.connection_id for f in run.destination_failures}
        if on_change:
            for connection_id, connection_hash in pending_commits.items():
                if connection_id not in undelivered and connection_id not in failed_writes:
                    self.detector.commit(ChangeDetector.key(job.id, connection_id), connection_hash)
            if not run.memory_stopped and not run.destination_failures:
                self.detector.commit(run_key, run.fingerprint)

        checkpoint = self.store.current(job.id) or checkpoint
        await self._finish(
            job,
            run,
            checkpoint_covers=checkpoint.covers(c.id for c in connections),
            has_batch=bool(batch_plans)
        )

    async def _connection_failed(self, run: Run, outcome: ConnectionOutcome, error: str, connection: Connection) -> None:
        outcome.status = ConnectionStatus.FAILED
        outcome.error = error
        outcome.completed_at = _utcnow()
        await self.store.record_connection_result(run.job_id, connection.id, CheckpointOutcome.FAILED)
        self.emitter.connection_failed(run, outcome)

    async def _finish(self, job: Job, run: Run, checkpoint_covers: bool, has_batch: bool) -> None:
        """Apply the completion policy: final status, event and checkpoint fate"""
        if run.memory_stopped:
            status, reason, clear = RunStatus.FAILED, "memory_threshold_exceeded", False
        elif run.destination_failures:
            status, reason, clear = RunStatus.FAILED, "destination_write_failed", False
        elif run.failed_connections:
            # Batched destinations already received the failure context inline
            status, reason, clear = RunStatus.FAILED, "connection_failures", has_batch and checkpoint_covers
        else:
            status, reason, clear = RunStatus.COMPLETED, None, True

        await self.store.end_run(job.id, clear=clear)
        run.checkpoint_cleared = clear

        if job.trigger == TriggerPolicy.ON_CHANGE:
            # Per-connection fingerprints are committed only for delivered writes
            for connection_id in job.connection_ids:
                stored = self.detector.stored(ChangeDetector.key(job.id, connection_id))
                if stored:
                    job.connection_hashes[connection_id] = stored
        if not run.memory_stopped:
            job.last_run = _utcnow()
            if job.trigger == TriggerPolicy.ON_CHANGE:
                job.last_hash = self.detector.stored(ChangeDetector.key(job.id))

        run.finish(status)
        if status == RunStatus.COMPLETED:
            logger.info(
                f"Job {job.id} completed: {run.completed_connections} completed, "
                f"{run.skipped_connections} skipped, {run.rows_processed} rows"
            )
            self.emitter.job_completed(run)
        else:
            logger.warning(f"Job {job.id} failed ({reason}): {'; '.join(run.all_errors)}")
            self.emitter.job_failed(run, reason=reason)

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    async def test_job(self, job: Job, connection: Optional[Connection]) -> Dict[str, Any]:
        """Run the job's query on one connection without writing anywhere"""
        if connection is None:
            return {"success": False, "rowCount": 0, "message": "Connection not found"}

        try:
            rows = await self.runner.run(connection, job)
        except ConnectionExecutionError as e:
            return {"success": False, "rowCount": 0, "message": f"Test failed: {e.summary}"}

        return {
            "success": True,
            "rowCount": len(rows),
            "message": f"Query executed successfully. Returned {len(rows)} rows.",
        }
