from datetime import datetime, timezone
from typing import Iterable, List
from pydantic import BaseModel, Field, validator
from models.base import CheckpointOutcome


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobCheckpoint(BaseModel):
    """
    Persisted projection of an in-flight run.

    Purpose:
    - Resume a run without re-querying connections that already completed
    - Survive a crash between two connection completions

    Design:
    - One document per job, fully overwritten on every update
    - completed and failed id sets are disjoint; the latest outcome for a
      connection wins
    - Serialised with camelCase keys:
      { jobId, jobName, completedConnectionIds, failedConnectionIds,
        totalConnections, lastUpdated }
    """

    job_id: str = Field(..., alias="jobId", min_length=1)
    job_name: str = Field("", alias="jobName")
    completed_connection_ids: List[str] = Field(default_factory=list, alias="completedConnectionIds")
    failed_connection_ids: List[str] = Field(default_factory=list, alias="failedConnectionIds")
    total_connections: int = Field(0, alias="totalConnections", ge=0)
    last_updated: datetime = Field(default_factory=_utcnow, alias="lastUpdated")

    @validator("failed_connection_ids")
    def check_disjoint(cls, v, values):
        overlap = set(v) & set(values.get("completed_connection_ids") or [])
        if overlap:
            raise ValueError(
                f"Connections cannot be both completed and failed: {sorted(overlap)}"
            )
        return v

    def record(self, connection_id: str, outcome: CheckpointOutcome) -> None:
        """Upsert one connection outcome (last write wins)"""
        if outcome == CheckpointOutcome.COMPLETED:
            target, other = self.completed_connection_ids, self.failed_connection_ids
        else:
            target, other = self.failed_connection_ids, self.completed_connection_ids

        if connection_id in other:
            other.remove(connection_id)
        if connection_id not in target:
            target.append(connection_id)
        self.last_updated = _utcnow()

    def restricted_to(self, connection_ids: Iterable[str]) -> "JobCheckpoint":
        """Copy without connections that are no longer part of the job"""
        allowed = list(connection_ids)
        allowed_set = set(allowed)
        return JobCheckpoint(
            job_id=self.job_id,
            job_name=self.job_name,
            completed_connection_ids=[c for c in self.completed_connection_ids if c in allowed_set],
            failed_connection_ids=[c for c in self.failed_connection_ids if c in allowed_set],
            total_connections=len(allowed),
            last_updated=self.last_updated,
        )

    def covers(self, connection_ids: Iterable[str]) -> bool:
        """True when every given connection has a recorded outcome"""
        attempted = set(self.completed_connection_ids) | set(self.failed_connection_ids)
        return set(connection_ids) <= attempted

    def is_completed(self, connection_id: str) -> bool:
        return connection_id in self.completed_connection_ids

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    class Config:
        populate_by_name = True
