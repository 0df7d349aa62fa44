"""
Process memory sampling for bounded-memory job runs
"""

import gc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
import logging

import psutil

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass
class MemorySample:
    """Resident memory at one point in time; ``resident_mb`` is None when sampling failed"""
    resident_mb: Optional[float]
    threshold_mb: float
    sampled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "resident_mb": round(self.resident_mb, 1) if self.resident_mb is not None else None,
            "threshold_mb": self.threshold_mb,
            "sampled_at": self.sampled_at.isoformat(),
        }


class MemoryMonitor:
    """
    Samples process RSS with psutil and compares it with a ceiling.

    Never raises: a failed sample is reported as unknown and treated as
    below threshold. After a sample over the threshold, the next ``sample``
    first runs a garbage collection pass.
    """

    def __init__(
        self,
        threshold_mb: float,
        sampler: Optional[Callable[[], float]] = None
    ):
        self.threshold_mb = threshold_mb
        self._sampler = sampler or self._process_rss_mb
        self._process: Optional[psutil.Process] = None
        self._previous_exceeded = False
        self.gc_triggered_count = 0
        self.last_sample: Optional[MemorySample] = None

    def _process_rss_mb(self) -> float:
        if self._process is None:
            self._process = psutil.Process()
        return self._process.memory_info().rss / BYTES_PER_MB

    def sample(self) -> MemorySample:
        if self._previous_exceeded:
            gc.collect()
            self.gc_triggered_count += 1
            logger.debug("Ran garbage collection after previous memory sample exceeded threshold")

        try:
            resident_mb = float(self._sampler())
        except Exception as e:
            logger.warning(f"Failed to sample process memory: {e}")
            resident_mb = None

        sample = MemorySample(resident_mb=resident_mb, threshold_mb=self.threshold_mb)
        self._previous_exceeded = self.exceeds_threshold(sample)
        self.last_sample = sample
        return sample

    def exceeds_threshold(self, sample: MemorySample) -> bool:
        if sample.resident_mb is None:
            return False
        return sample.resident_mb > sample.threshold_mb
