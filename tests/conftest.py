"""
Pytest configuration and fixtures
"""

import pytest
from typing import Any, Dict, Iterable, List, Optional

from core.exceptions import DestinationWriteError
from engine.adapters.base import ConnectionRows, DestinationAdapter, SendResult
from engine.adapters.registry import AdapterRegistry
from engine.checkpoint_store import FileCheckpointStore, InMemoryCheckpointStore
from engine.connection_runner import ConnectionRunner
from engine.executor import JobExecutor
from engine.memory_monitor import MemoryMonitor
from engine.progress import ProgressEmitter
from models.base import AdapterCapability, WriteStrategy
from models.job import Connection, DestinationConfig, Job


class FakeQueryCapability:
    """
    Query capability returning canned rows per connection id.

    A value that is an exception instance is raised instead of returned.
    """

    def __init__(self, results: Optional[Dict[str, Any]] = None):
        self.results = results or {}
        self.calls: List[str] = []
        self.queries: List[str] = []

    async def run_query(self, connection, query_text, timeout_ms):
        self.calls.append(connection.id)
        self.queries.append(query_text)
        outcome = self.results.get(connection.id, [])
        if isinstance(outcome, BaseException):
            raise outcome
        return [dict(row) for row in outcome]


class RecordingAdapter(DestinationAdapter):
    """Destination that records every call; can be told to fail"""

    def __init__(
        self,
        name: str,
        capabilities: Iterable[AdapterCapability],
        strategy: WriteStrategy,
        fail_connections: Iterable[str] = (),
        fail_always: bool = False
    ):
        self.name = name
        self.capabilities = frozenset(capabilities)
        self.strategy = strategy
        self.fail_connections = set(fail_connections)
        self.fail_always = fail_always
        self.calls: List[tuple] = []
        self.prepare_count = 0

    def _check(self, connection_ids: Iterable[str]) -> None:
        if self.fail_always or self.fail_connections & set(connection_ids):
            raise DestinationWriteError(
                f"{self.name} unavailable",
                context={"destination_type": self.name}
            )

    async def prepare(self, config, context):
        self.prepare_count += 1

    async def send(self, rows, config, context):
        self.calls.append(("send", list(rows)))
        self._check([context.connection_id] if context.connection_id else [])
        return SendResult.ok(len(rows))

    async def send_multi_connection(self, entries, config, context):
        entries = list(entries)
        self.calls.append(("send_multi_connection", entries))
        self._check(entry.connection.id for entry in entries)
        return SendResult.ok(sum(len(entry.rows) for entry in entries))

    async def send_progressive(self, connection, rows, config, context):
        self.calls.append(("send_progressive", connection.id, list(rows)))
        self._check([connection.id])
        return SendResult.ok(len(rows))

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def delivered_entries(self) -> List[ConnectionRows]:
        return [entry for call in self.calls_to("send_multi_connection") for entry in call[1]]


@pytest.fixture
def connections() -> List[Connection]:
    return [
        Connection(id=f"conn_{i}", name=f"Connection {i}", database=f"db_{i}")
        for i in range(1, 4)
    ]


@pytest.fixture
def make_connections():
    def _make(count: int) -> List[Connection]:
        return [
            Connection(id=f"conn_{i}", name=f"Connection {i}", database=f"db_{i}")
            for i in range(1, count + 1)
        ]
    return _make


@pytest.fixture
def make_job():
    def _make(connections: List[Connection], destinations: Iterable[str] = (), **kwargs) -> Job:
        options = {
            "id": "job_1",
            "name": "Daily sales",
            "query": "SELECT * FROM sales",
            "connection_ids": [c.id for c in connections],
            "destinations": [DestinationConfig(type=d) for d in destinations],
        }
        options.update(kwargs)
        return Job(**options)
    return _make


@pytest.fixture
def rows_by_connection(connections) -> Dict[str, List[Dict[str, Any]]]:
    return {
        c.id: [{"id": index * 10 + 1, "amount": 10.5}, {"id": index * 10 + 2, "amount": 20.0}]
        for index, c in enumerate(connections, start=1)
    }


@pytest.fixture
def make_adapter():
    """Factory for recording adapters of each write strategy"""
    presets = {
        "progressive": ({AdapterCapability.SEND_PROGRESSIVE}, WriteStrategy.PROGRESSIVE),
        "batch": ({AdapterCapability.SEND_MULTI_CONNECTION}, WriteStrategy.BATCH_AT_END),
        "batch_send": ({AdapterCapability.SEND}, WriteStrategy.BATCH_AT_END),
        "streamed": ({AdapterCapability.SEND_MULTI_CONNECTION}, WriteStrategy.STREAMED),
    }

    def _make(kind: str, name: Optional[str] = None, **kwargs) -> RecordingAdapter:
        capabilities, strategy = presets[kind]
        return RecordingAdapter(name or kind, capabilities, strategy, **kwargs)
    return _make


@pytest.fixture
def memory_store():
    return InMemoryCheckpointStore()


@pytest.fixture
def file_store(tmp_path):
    return FileCheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
def quiet_monitor():
    """Memory monitor that never reports pressure"""
    return MemoryMonitor(threshold_mb=1024, sampler=lambda: 100.0)


@pytest.fixture
def pressure_monitor():
    """Factory: monitor whose n-th sample (1-based) exceeds the threshold"""
    def _make(exceed_on: int) -> MemoryMonitor:
        count = {"samples": 0}

        def sampler() -> float:
            count["samples"] += 1
            return 4096.0 if count["samples"] >= exceed_on else 100.0

        return MemoryMonitor(threshold_mb=1024, sampler=sampler)
    return _make


@pytest.fixture
def build_executor(memory_store, quiet_monitor):
    """Factory for executors wired to fakes; retries are immediate"""
    def _build(capability, adapters=(), store=None, monitor=None, **kwargs) -> JobExecutor:
        registry = AdapterRegistry()
        for adapter in adapters:
            registry.register(adapter)
        options = {
            "memory_check_interval": 1,
            "max_retries": 2,
            "retry_delay": 0,
            "stream_flush_interval": 0,
            "stream_batch_size": 1000,
        }
        options.update(kwargs)
        return JobExecutor(
            store=store or memory_store,
            runner=ConnectionRunner(capability, timeout_ms=5000),
            registry=registry,
            monitor=monitor or quiet_monitor,
            emitter=ProgressEmitter(),
            **options
        )
    return _build


@pytest.fixture
def fake_capability():
    return FakeQueryCapability


def event_types(emitter: ProgressEmitter, job_id: Optional[str] = None) -> List[str]:
    return [event.type.value for event in emitter.history(job_id=job_id)]


@pytest.fixture
def history_types():
    return event_types
