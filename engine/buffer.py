"""
Hybrid time/size batching for the streamed write strategy.

Rows are buffered per destination and flushed:
- every ``flush_interval`` seconds (time-based)
- when buffered rows reach ``batch_size`` (size-based)
- on close, at the end of the run

Flushes never overlap. A failed flush keeps its entries for the next flush.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Set
import logging

from core.exceptions import EngineException
from engine.adapters.base import ConnectionRows

logger = logging.getLogger(__name__)


class StreamBuffer:
    """
    Buffer for one streamed destination during one run.

    Args:
        deliver: Coroutine function writing a list of entries; raises on failure
        name: Label used in log messages
        flush_interval: Seconds between timed flushes
        batch_size: Buffered row count that triggers an immediate flush
    """

    def __init__(
        self,
        deliver: Callable[[List[ConnectionRows]], Awaitable[None]],
        name: str = "stream",
        flush_interval: float = 10.0,
        batch_size: int = 150
    ):
        self._deliver = deliver
        self.name = name
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self._entries: List[ConnectionRows] = []
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self.last_error: Optional[str] = None
        self.flush_count = 0
        self.rows_flushed = 0
        self.delivered_ids: Set[str] = set()

    @property
    def buffered_rows(self) -> int:
        return sum(len(entry.rows) for entry in self._entries)

    @property
    def pending_ids(self) -> Set[str]:
        return {entry.connection.id for entry in self._entries}

    def start(self) -> None:
        if self._timer is None and self.flush_interval > 0:
            self._timer = asyncio.create_task(self._flush_periodically())

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            if self._entries:
                logger.debug(f"Timed flush of {self.name} buffer")
                await self.flush()

    async def add(self, entry: ConnectionRows) -> None:
        # Empty results are only forwarded when they carry a failure message
        if not entry.rows and not entry.failed:
            return
        self._entries.append(entry)
        logger.debug(
            f"Buffered {len(entry.rows)} rows from {entry.connection.id} for {self.name} "
            f"(total {self.buffered_rows} rows from {len(self._entries)} connections)"
        )
        if self.buffered_rows >= self.batch_size:
            logger.info(f"{self.name} buffer reached {self.buffered_rows} rows, flushing")
            await self.flush()

    async def flush(self) -> bool:
        """Send everything buffered; returns False if the delivery failed"""
        async with self._lock:
            if not self._entries:
                return True

            batch, self._entries = self._entries, []
            try:
                await self._deliver(batch)
            except EngineException as e:
                self._entries = batch + self._entries
                self.last_error = e.summary
                logger.warning(
                    f"Flush of {self.name} buffer failed, keeping {len(batch)} entries: {e.summary}",
                    extra={"error_context": e.to_dict()}
                )
                return False

            self.flush_count += 1
            self.rows_flushed += sum(len(entry.rows) for entry in batch)
            self.delivered_ids.update(entry.connection.id for entry in batch)
            logger.info(f"Flushed {len(batch)} entries to {self.name}")
            return True

    def cancel(self) -> None:
        """Stop the flush timer without flushing"""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def close(self) -> Optional[str]:
        """
        Stop the timer and flush what is left.

        Returns:
            The failure message if buffered entries could not be delivered
        """
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

        if await self.flush():
            return None
        return self.last_error or "buffered rows could not be delivered"
