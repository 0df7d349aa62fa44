"""
Progress event schema shared by the executor and the presentation layer
"""

from datetime import datetime, timezone
from typing import Any, Dict
from pydantic import BaseModel, Field, validator
from models.base import ProgressEventType


def clamp_percentage(value: Any) -> int:
    """Clamp a percentage to the 0-100 range"""
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, number))


class ProgressEvent(BaseModel):
    """
    One state transition of a job run.

    Transient: events are emitted to subscribers and kept in a bounded
    in-memory history, never persisted.
    """

    type: ProgressEventType
    job_id: str = Field(..., alias="jobId")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)

    @validator("data")
    def clamp_data_percentage(cls, v):
        """Percentages in payloads are always 0-100"""
        if "percentage" in v:
            v["percentage"] = clamp_percentage(v["percentage"])
        return v

    def to_wire(self) -> Dict[str, Any]:
        """Discriminated union shape: {type, jobId, timestamp, data}"""
        return self.model_dump(mode="json", by_alias=True)

    class Config:
        populate_by_name = True
