"""
Wiring of the engine components from application settings
"""

from pathlib import Path
from typing import Optional, Union
import logging

from core.config import Settings, settings as default_settings
from core.database import dispose_engines
from engine.adapters.registry import AdapterRegistry, default_registry
from engine.change_detector import ChangeDetector
from engine.checkpoint_store import CheckpointStore, FileCheckpointStore
from engine.connection_runner import ConnectionRunner, QueryCapability
from engine.connectors.sql import SQLAlchemyQueryCapability
from engine.executor import JobExecutor
from engine.health import ConnectionHealthProbe
from engine.memory_monitor import MemoryMonitor
from engine.progress import ProgressEmitter
from engine.scheduler import JobScheduler
from models.job import JobDefinitions

logger = logging.getLogger(__name__)


class EngineRuntime:
    """All long-lived engine components of one process"""

    def __init__(
        self,
        settings: Settings,
        store: CheckpointStore,
        monitor: MemoryMonitor,
        emitter: ProgressEmitter,
        runner: ConnectionRunner,
        registry: AdapterRegistry,
        executor: JobExecutor,
        health_probe: ConnectionHealthProbe,
        scheduler: JobScheduler
    ):
        self.settings = settings
        self.store = store
        self.monitor = monitor
        self.emitter = emitter
        self.runner = runner
        self.registry = registry
        self.executor = executor
        self.health_probe = health_probe
        self.scheduler = scheduler

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        capability: Optional[QueryCapability] = None,
        registry: Optional[AdapterRegistry] = None,
        store: Optional[CheckpointStore] = None,
        monitor: Optional[MemoryMonitor] = None
    ) -> "EngineRuntime":
        """
        Build the runtime; any component can be substituted (tests, embedding).
        """
        settings = settings or default_settings

        store = store or FileCheckpointStore(settings.CHECKPOINT_DIR)
        monitor = monitor or MemoryMonitor(settings.MEMORY_THRESHOLD_MB)
        emitter = ProgressEmitter(history_size=settings.PROGRESS_HISTORY_SIZE)
        runner = ConnectionRunner(capability or SQLAlchemyQueryCapability(), timeout_ms=settings.QUERY_TIMEOUT_MS)
        registry = registry or default_registry(
            max_retries=settings.MAX_RETRIES,
            retry_delay=settings.RETRY_DELAY_SECONDS
        )

        executor = JobExecutor(
            store=store,
            runner=runner,
            registry=registry,
            monitor=monitor,
            detector=ChangeDetector(),
            emitter=emitter,
            resume_enabled=settings.RESUME_ENABLED,
            memory_check_interval=settings.MEMORY_CHECK_INTERVAL,
            max_retries=settings.MAX_RETRIES,
            retry_delay=settings.RETRY_DELAY_SECONDS,
            stream_flush_interval=settings.STREAM_FLUSH_INTERVAL_SECONDS,
            stream_batch_size=settings.STREAM_BATCH_SIZE
        )
        health_probe = ConnectionHealthProbe(runner, timeout_seconds=settings.CONNECTION_TEST_TIMEOUT_SECONDS)
        scheduler = JobScheduler(
            executor,
            health_probe=health_probe,
            health_interval_minutes=settings.HEALTH_CHECK_INTERVAL_MINUTES
        )

        return cls(settings, store, monitor, emitter, runner, registry, executor, health_probe, scheduler)

    def load_definitions(self, path: Optional[Union[str, Path]] = None) -> Optional[JobDefinitions]:
        """Register connections and jobs from a definitions file"""
        path = path or self.settings.DEFINITIONS_FILE
        if not path:
            logger.info("No definitions file configured")
            return None

        definitions = JobDefinitions.from_file(path)
        self.scheduler.register_definitions(definitions)
        return definitions

    def start(self) -> None:
        self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await dispose_engines()
