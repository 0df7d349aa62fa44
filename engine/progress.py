"""
Progress events for the presentation layer.

Subscribers are plain callables receiving a ProgressEvent. A subscriber that
raises is logged and skipped; event delivery never affects a run.
"""

from collections import deque
from typing import Any, Callable, Deque, List, Optional
import logging

from models.base import ProgressEventType
from models.job import Connection
from models.run import ConnectionOutcome, Run
from schemas.events import ProgressEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """Fan-out of progress events plus a bounded in-memory history"""

    def __init__(self, history_size: int = 500):
        self._subscribers: List[Subscriber] = []
        self._history: Deque[ProgressEvent] = deque(maxlen=history_size)

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers = [s for s in self._subscribers if s != subscriber]

    def emit(self, event_type: ProgressEventType, job_id: str, **data: Any) -> ProgressEvent:
        event = ProgressEvent(type=event_type, job_id=job_id, data=data)
        self._history.append(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception(f"Progress subscriber failed on {event_type.value}")
        return event

    def history(self, job_id: Optional[str] = None, limit: Optional[int] = None) -> List[ProgressEvent]:
        events = [e for e in self._history if job_id is None or e.job_id == job_id]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    # ------------------------------------------------------------------
    # Helpers per event type
    # ------------------------------------------------------------------

    def job_started(self, run: Run, skipped: int = 0) -> ProgressEvent:
        return self.emit(
            ProgressEventType.JOB_STARTED,
            run.job_id,
            jobName=run.job_name,
            totalConnections=run.total_connections,
            resumed=run.resumed,
            skippedConnections=skipped,
            percentage=0,
        )

    def job_progress(self, run: Run) -> ProgressEvent:
        return self.emit(
            ProgressEventType.JOB_PROGRESS,
            run.job_id,
            completedConnections=run.completed_connections,
            failedConnections=run.failed_connections,
            skippedConnections=run.skipped_connections,
            totalConnections=run.total_connections,
            rowsProcessed=run.rows_processed,
            percentage=run.percentage,
        )

    def connection_started(self, run: Run, connection: Connection, index: int) -> ProgressEvent:
        return self.emit(
            ProgressEventType.CONNECTION_STARTED,
            run.job_id,
            connectionId=connection.id,
            connectionName=connection.display_name,
            index=index,
            totalConnections=run.total_connections,
            percentage=run.percentage,
        )

    def connection_progress(self, run: Run, connection: Connection, rows: int, message: str = "") -> ProgressEvent:
        return self.emit(
            ProgressEventType.CONNECTION_PROGRESS,
            run.job_id,
            connectionId=connection.id,
            connectionName=connection.display_name,
            rowsProcessed=rows,
            message=message,
            percentage=run.percentage,
        )

    def connection_completed(self, run: Run, outcome: ConnectionOutcome, skipped: bool = False) -> ProgressEvent:
        return self.emit(
            ProgressEventType.CONNECTION_COMPLETED,
            run.job_id,
            connectionId=outcome.connection_id,
            connectionName=outcome.connection_name,
            rowsProcessed=outcome.rows_processed,
            unchanged=outcome.unchanged,
            skipped=skipped,
            duration=outcome.duration_ms,
            percentage=run.percentage,
        )

    def connection_failed(self, run: Run, outcome: ConnectionOutcome) -> ProgressEvent:
        return self.emit(
            ProgressEventType.CONNECTION_FAILED,
            run.job_id,
            connectionId=outcome.connection_id,
            connectionName=outcome.connection_name,
            error=outcome.error or "",
            percentage=run.percentage,
        )

    def job_completed(self, run: Run) -> ProgressEvent:
        summary = run.summary()
        summary.pop("jobId", None)
        return self.emit(
            ProgressEventType.JOB_COMPLETED,
            run.job_id,
            percentage=100,
            **summary,
        )

    def job_failed(self, run: Run, reason: str) -> ProgressEvent:
        summary = run.summary()
        summary.pop("jobId", None)
        return self.emit(
            ProgressEventType.JOB_FAILED,
            run.job_id,
            reason=reason,
            error="; ".join(run.all_errors) or reason,
            percentage=run.percentage,
            **summary,
        )
