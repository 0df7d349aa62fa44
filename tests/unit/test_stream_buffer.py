import asyncio
import pytest

from core.exceptions import DestinationWriteError
from engine.adapters.base import ConnectionRows
from engine.buffer import StreamBuffer
from models.job import Connection


def _entry(connection_id, row_count=0, failed_message=None):
    return ConnectionRows(
        Connection(id=connection_id, name=connection_id),
        rows=[{"id": i} for i in range(row_count)],
        failed_message=failed_message,
    )


class Sink:
    def __init__(self, failures=0):
        self.batches = []
        self.failures = failures

    async def __call__(self, entries):
        if self.failures:
            self.failures -= 1
            raise DestinationWriteError("endpoint unavailable")
        self.batches.append([e.connection.id for e in entries])


@pytest.mark.asyncio
async def test_flushes_when_batch_size_reached():
    sink = Sink()
    buffer = StreamBuffer(sink, flush_interval=0, batch_size=5)

    await buffer.add(_entry("a", 3))
    assert sink.batches == []
    assert buffer.buffered_rows == 3

    await buffer.add(_entry("b", 2))
    assert sink.batches == [["a", "b"]]
    assert buffer.buffered_rows == 0
    assert buffer.delivered_ids == {"a", "b"}
    assert buffer.rows_flushed == 5


@pytest.mark.asyncio
async def test_empty_entries_are_skipped_unless_failed():
    sink = Sink()
    buffer = StreamBuffer(sink, flush_interval=0, batch_size=100)

    await buffer.add(_entry("empty"))
    await buffer.add(_entry("broken", failed_message="timeout"))

    assert buffer.pending_ids == {"broken"}
    assert await buffer.close() is None
    assert sink.batches == [["broken"]]


@pytest.mark.asyncio
async def test_failed_flush_keeps_entries_for_next_flush():
    sink = Sink(failures=1)
    buffer = StreamBuffer(sink, flush_interval=0, batch_size=100)
    await buffer.add(_entry("a", 1))

    assert await buffer.flush() is False
    assert buffer.pending_ids == {"a"}
    assert buffer.last_error == "endpoint unavailable"

    await buffer.add(_entry("b", 1))
    assert await buffer.close() is None
    assert sink.batches == [["a", "b"]]
    assert buffer.flush_count == 1


@pytest.mark.asyncio
async def test_close_reports_undeliverable_entries():
    sink = Sink(failures=5)
    buffer = StreamBuffer(sink, flush_interval=0, batch_size=100)
    await buffer.add(_entry("a", 1))

    assert await buffer.close() == "endpoint unavailable"
    assert buffer.pending_ids == {"a"}


@pytest.mark.asyncio
async def test_timer_flushes_periodically():
    sink = Sink()
    buffer = StreamBuffer(sink, flush_interval=0.01, batch_size=100)
    buffer.start()
    try:
        await buffer.add(_entry("a", 1))
        for _ in range(50):
            if sink.batches:
                break
            await asyncio.sleep(0.01)
    finally:
        await buffer.close()

    assert sink.batches == [["a"]]


@pytest.mark.asyncio
async def test_flushes_never_overlap():
    active = 0
    overlaps = []

    async def slow_sink(entries):
        nonlocal active
        active += 1
        overlaps.append(active)
        await asyncio.sleep(0.01)
        active -= 1

    buffer = StreamBuffer(slow_sink, flush_interval=0, batch_size=100)
    await buffer.add(_entry("a", 1))
    first = asyncio.create_task(buffer.flush())
    await asyncio.sleep(0)
    await buffer.add(_entry("b", 1))
    await asyncio.gather(first, buffer.flush())

    assert max(overlaps) == 1
