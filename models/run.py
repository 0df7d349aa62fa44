"""
In-memory representation of one job run.

A Run only lives for the duration of an execution; its durable projection is
the JobCheckpoint.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from models.base import RunStatus, ConnectionStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConnectionOutcome:
    connection_id: str
    connection_name: str
    status: ConnectionStatus = ConnectionStatus.PENDING
    rows_processed: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    unchanged: bool = False

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.completed_at:
            return int((self.completed_at - self.started_at).total_seconds() * 1000)
        return None


@dataclass
class DestinationFailure:
    """A destination write that failed after all retries"""
    destination_type: str
    message: str
    connection_id: Optional[str] = None  # None for aggregate (batch) writes

    def describe(self) -> str:
        target = self.connection_id or "all connections"
        return f"{self.destination_type} ({target}): {self.message}"


@dataclass
class Run:
    job_id: str
    job_name: str
    total_connections: int = 0
    status: RunStatus = RunStatus.PENDING
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    resumed: bool = False
    outcomes: Dict[str, ConnectionOutcome] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    destination_failures: List[DestinationFailure] = field(default_factory=list)
    memory_stopped: bool = False
    fingerprint: Optional[str] = None
    checkpoint_cleared: bool = False

    def outcome(self, connection_id: str, connection_name: str) -> ConnectionOutcome:
        if connection_id not in self.outcomes:
            self.outcomes[connection_id] = ConnectionOutcome(connection_id, connection_name)
        return self.outcomes[connection_id]

    def _count(self, status: ConnectionStatus) -> int:
        return sum(1 for o in self.outcomes.values() if o.status == status)

    @property
    def completed_connections(self) -> int:
        return self._count(ConnectionStatus.COMPLETED)

    @property
    def failed_connections(self) -> int:
        return self._count(ConnectionStatus.FAILED)

    @property
    def skipped_connections(self) -> int:
        return self._count(ConnectionStatus.SKIPPED)

    @property
    def unchanged_connections(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.unchanged)

    @property
    def rows_processed(self) -> int:
        return sum(o.rows_processed for o in self.outcomes.values())

    @property
    def attempted_connections(self) -> int:
        return self.completed_connections + self.failed_connections + self.skipped_connections

    @property
    def percentage(self) -> int:
        if self.total_connections <= 0:
            return 0
        return min(100, round(self.attempted_connections / self.total_connections * 100))

    @property
    def all_errors(self) -> List[str]:
        return self.errors + [f.describe() for f in self.destination_failures]

    def finish(self, status: RunStatus) -> None:
        self.status = status
        self.completed_at = _utcnow()

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at:
            return int((self.completed_at - self.started_at).total_seconds() * 1000)
        return None

    def summary(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "jobName": self.job_name,
            "status": self.status.value,
            "totalConnections": self.total_connections,
            "completedConnections": self.completed_connections,
            "failedConnections": self.failed_connections,
            "skippedConnections": self.skipped_connections,
            "unchangedConnections": self.unchanged_connections,
            "rowsProcessed": self.rows_processed,
            "memoryStopped": self.memory_stopped,
            "resumed": self.resumed,
            "errors": self.all_errors,
            "duration": self.duration_ms,
        }
