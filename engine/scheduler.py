"""
APScheduler integration: job timers, manual fires and health probing
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.exceptions import JobBusyError, JobNotFoundError, ScheduleError
from engine.executor import JobExecutor
from engine.health import ConnectionHealth, ConnectionHealthProbe
from engine.schedule import build_trigger, resolve_schedule
from models.job import Connection, Job, JobDefinitions
from models.run import Run

logger = logging.getLogger(__name__)

HEALTH_PROBE_ID = "connection_health_probe"


class JobScheduler:
    """
    Owns the registered jobs and their timers.

    A job has at most one active run: ``fire`` on a busy job raises
    JobBusyError and a timer tick that finds the job busy is skipped.
    Runs execute as independent asyncio tasks so timers keep firing for
    other jobs.
    """

    def __init__(
        self,
        executor: JobExecutor,
        health_probe: Optional[ConnectionHealthProbe] = None,
        health_interval_minutes: int = 15,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.executor = executor
        self.health_probe = health_probe
        self.health_interval_minutes = health_interval_minutes
        self.scheduler = scheduler or AsyncIOScheduler()
        self._jobs: Dict[str, Job] = {}
        self._connections: Dict[str, Connection] = {}
        self._schedule_errors: Dict[str, str] = {}
        self._active: Dict[str, asyncio.Task] = {}
        self.last_runs: Dict[str, Run] = {}

    @staticmethod
    def _timer_id(job_id: str) -> str:
        return f"job:{job_id}"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_connection(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def register_definitions(self, definitions: JobDefinitions) -> None:
        for connection in definitions.connections:
            self.register_connection(connection)
        for job in definitions.jobs:
            self.register(job)
        logger.info(
            f"Registered {len(definitions.jobs)} jobs and {len(definitions.connections)} connections"
        )

    def _remove_timer(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(self._timer_id(job_id))
        except JobLookupError:
            pass

    def register(self, job: Job) -> None:
        """Add or replace a job and its timer"""
        self._jobs[job.id] = job
        self._schedule_errors.pop(job.id, None)
        self._remove_timer(job.id)

        if not job.enabled:
            logger.info(f"Job {job.name} is disabled, not scheduling")
            return

        descriptor = resolve_schedule(job)
        try:
            trigger = build_trigger(descriptor)
        except ScheduleError as e:
            self._schedule_errors[job.id] = e.summary
            logger.error(
                f"Job {job.name} not scheduled: {e.summary}",
                extra={"error_context": e.to_dict()}
            )
            return

        if trigger is None:
            logger.info(f"Job {job.name} set to manual mode, will not auto-run")
            return

        self.scheduler.add_job(
            self._fire_scheduled,
            trigger=trigger,
            args=[job.id],
            id=self._timer_id(job.id),
            name=job.name,
            replace_existing=True,
            coalesce=True,
            max_instances=1
        )
        logger.info(f"Scheduled job {job.name} with schedule: {descriptor}")

    def unregister(self, job_id: str) -> None:
        self._remove_timer(job_id)
        self._jobs.pop(job_id, None)
        self._schedule_errors.pop(job_id, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def get_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} is not registered", context={"job_id": job_id})
        return job

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def connections_for(self, job: Job) -> List[Connection]:
        """The job's connections in configured order; unknown ids are ignored"""
        resolved = []
        for connection_id in job.connection_ids:
            connection = self._connections.get(connection_id)
            if connection is None:
                logger.warning(f"Job {job.id} references unknown connection {connection_id}, ignoring")
                continue
            resolved.append(connection)
        return resolved

    def is_busy(self, job_id: str) -> bool:
        task = self._active.get(job_id)
        return task is not None and not task.done()

    @property
    def active_runs(self) -> int:
        return sum(1 for job_id in self._active if self.is_busy(job_id))

    def schedule_error(self, job_id: str) -> Optional[str]:
        return self._schedule_errors.get(job_id)

    def next_fire_time(self, job_id: str) -> Optional[datetime]:
        timer = self.scheduler.get_job(self._timer_id(job_id))
        if timer is None:
            return None
        # Timers added before start() have no next_run_time yet
        next_run = getattr(timer, "next_run_time", None)
        if next_run is None and not self.scheduler.running:
            next_run = timer.trigger.get_next_fire_time(None, datetime.now(timezone.utc))
        return next_run

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def fire(self, job_id: str, resume: Optional[bool] = None) -> asyncio.Task:
        """
        Start a run of the job as an independent task and return at once.

        Disabled jobs can still be fired explicitly.

        Raises:
            JobNotFoundError: Unknown job id
            JobBusyError: A run of the job is still active
        """
        job = self.get_job(job_id)
        if self.is_busy(job_id):
            raise JobBusyError(
                f"Job {job.name} is already running",
                context={"job_id": job_id}
            )

        connections = self.connections_for(job)
        task = asyncio.create_task(self._execute(job, connections, resume), name=f"run:{job_id}")
        self._active[job_id] = task

        def _release(finished: asyncio.Task) -> None:
            if self._active.get(job_id) is finished:
                del self._active[job_id]

        task.add_done_callback(_release)
        logger.info(f"Fired job {job.name} ({len(connections)} connections)")
        return task

    async def _execute(self, job: Job, connections: List[Connection], resume: Optional[bool]) -> Run:
        run = await self.executor.execute(job, connections, resume=resume)
        self.last_runs[job.id] = run
        return run

    async def _fire_scheduled(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None or not job.enabled:
            return
        try:
            self.fire(job_id)
        except JobBusyError:
            logger.warning(f"Job {job.name} is still running, skipping scheduled run")

    async def test_job(self, job_id: str, connection_id: Optional[str] = None) -> dict:
        """Dry-run the job's query on one connection (the first by default)"""
        job = self.get_job(job_id)
        connections = self.connections_for(job)
        if connection_id is not None:
            connection = next((c for c in connections if c.id == connection_id), None)
        else:
            connection = connections[0] if connections else None
        return await self.executor.test_job(job, connection)

    # ------------------------------------------------------------------
    # Health probing
    # ------------------------------------------------------------------

    def probed_connections(self) -> List[Connection]:
        """Distinct connections used by enabled jobs"""
        seen: Dict[str, Connection] = {}
        for job in self._jobs.values():
            if job.enabled:
                for connection in self.connections_for(job):
                    seen.setdefault(connection.id, connection)
        return list(seen.values())

    async def probe_connections(self) -> List[ConnectionHealth]:
        if self.health_probe is None:
            return []
        return await self.health_probe.probe(self.probed_connections())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.health_probe is not None and self.health_interval_minutes > 0:
            self.scheduler.add_job(
                self.probe_connections,
                trigger=IntervalTrigger(minutes=self.health_interval_minutes),
                id=HEALTH_PROBE_ID,
                replace_existing=True,
                coalesce=True,
                max_instances=1
            )
        self.scheduler.start()
        logger.info(f"Job scheduler started with {len(self._jobs)} jobs")

    async def shutdown(self) -> None:
        """Stop timers and wait for active runs so their checkpoints land"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        active = [task for task in self._active.values() if not task.done()]
        if active:
            logger.info(f"Waiting for {len(active)} active runs to finish")
            await asyncio.gather(*active, return_exceptions=True)
        logger.info("Job scheduler stopped")
