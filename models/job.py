"""
Job, connection and destination definitions.

These are created and edited by the configuration layer; the engine treats
them as read-only during a run, except for ``Job.last_run``,
``Job.last_hash`` and ``Job.connection_hashes`` which the executor stamps
after each run.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from datetime import datetime
from pydantic import BaseModel, Field, validator
from models.base import MANUAL_SCHEDULE, TriggerPolicy, RecurrenceType, WriteStrategy


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


class Connection(BaseModel):
    """
    A SQL connection a job can run against.

    ``descriptor`` is opaque to the engine and handed to the SQL capability
    as-is. The remaining fields are descriptive and only used for checkpoint
    bookkeeping and destination payload enrichment.
    """

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    descriptor: Dict[str, Any] = Field(default_factory=dict)

    # Descriptive metadata
    database: Optional[str] = None
    group: Optional[str] = None
    partner: Optional[str] = None
    financial_year: Optional[str] = Field(None, alias="financialYear")
    tags: List[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.database or self.name

    def metadata(self) -> Dict[str, Any]:
        """Metadata attached to destination payloads"""
        return {
            "connectionId": self.id,
            "connectionName": self.display_name,
            "database": self.database or "",
            "group": self.group or "self",
            "partner": (self.partner or "") if self.group == "partner" else "",
            "financialYear": self.financial_year or "",
        }

    class Config:
        populate_by_name = True


class DestinationConfig(BaseModel):
    """
    One destination of a job.

    ``type`` selects the adapter; every other field is adapter-specific and
    kept as extra data. ``strategy`` optionally overrides the adapter's
    default write strategy.
    """

    type: str = Field(..., min_length=1)
    strategy: Optional[WriteStrategy] = None

    def get(self, key: str, default: Any = None) -> Any:
        """Read an adapter option by snake_case or camelCase name"""
        extra = self.model_extra or {}
        if key in extra:
            return extra[key]
        return extra.get(_camel(key), default)

    def has(self, key: str) -> bool:
        value = self.get(key)
        return value is not None and value != ""

    class Config:
        extra = "allow"


class Job(BaseModel):
    """A schedulable unit of work: query + connections + trigger + destinations"""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    query: Union[str, Dict[str, str]]
    schedule: str = MANUAL_SCHEDULE
    trigger: TriggerPolicy = TriggerPolicy.ALWAYS
    enabled: bool = True
    connection_ids: List[str] = Field(default_factory=list, alias="connectionIds")
    destinations: List[DestinationConfig] = Field(default_factory=list)
    group: Optional[str] = None

    # Recurrence helpers, resolved into a schedule descriptor by the scheduler
    recurrence_type: Optional[RecurrenceType] = Field(None, alias="recurrenceType")
    time_of_day: Optional[str] = Field(None, alias="timeOfDay")  # HH:MM
    every_n_days: Optional[int] = Field(None, alias="everyNDays", ge=1)

    # Stamped by the engine
    last_run: Optional[datetime] = Field(None, alias="lastRun")
    last_hash: Optional[str] = Field(None, alias="lastHash")
    connection_hashes: Dict[str, str] = Field(default_factory=dict, alias="connectionHashes")

    @validator("connection_ids", pre=True)
    def dedupe_connection_ids(cls, v):
        """Drop repeated connection ids, keeping configured order"""
        if v is None:
            return []
        seen = set()
        unique = []
        for connection_id in v:
            if connection_id and connection_id not in seen:
                seen.add(connection_id)
                unique.append(connection_id)
        return unique

    @validator("query")
    def check_query(cls, v):
        if isinstance(v, str):
            if not v.strip():
                raise ValueError("Query cannot be empty")
            return v
        if not v:
            raise ValueError("Named query mapping cannot be empty")
        for name, text in v.items():
            if not text or not text.strip():
                raise ValueError(f"Query '{name}' cannot be empty")
        return v

    @property
    def is_multi_query(self) -> bool:
        return isinstance(self.query, dict)

    class Config:
        populate_by_name = True


class JobDefinitions(BaseModel):
    """Connections and jobs handed over by the configuration layer"""

    connections: List[Connection] = Field(default_factory=list)
    jobs: List[Job] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "JobDefinitions":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

    def to_file(self, path: Union[str, Path]) -> None:
        """Write the definitions back, including what the engine stamped on jobs"""
        Path(path).write_text(self.model_dump_json(by_alias=True, indent=2), encoding="utf-8")

    def connection_map(self) -> Dict[str, Connection]:
        return {connection.id: connection for connection in self.connections}

    def get_job(self, job_id: str) -> Optional[Job]:
        return next((job for job in self.jobs if job.id == job_id), None)
