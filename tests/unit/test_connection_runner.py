import asyncio
import pytest
from sqlalchemy.exc import OperationalError

from core.exceptions import ConnectivityError, QueryExecutionError, QueryTimeoutError
from engine.connection_runner import CONNECTION_TEST_QUERY, ConnectionRunner
from models.job import Connection, Job

CONNECTION = Connection(id="conn_1", name="Primary", database="sales")


class SlowCapability:
    async def run_query(self, connection, query_text, timeout_ms):
        await asyncio.sleep(1)
        return []


def _job(query="SELECT * FROM sales"):
    return Job(id="job_1", name="Daily sales", query=query)


@pytest.mark.asyncio
async def test_run_returns_rows(fake_capability):
    capability = fake_capability({"conn_1": [{"id": 1}, {"id": 2}]})
    rows = await ConnectionRunner(capability).run(CONNECTION, _job())

    assert rows == [{"id": 1}, {"id": 2}]
    assert capability.queries == ["SELECT * FROM sales"]


@pytest.mark.asyncio
async def test_multi_query_rows_are_tagged(fake_capability):
    capability = fake_capability({"conn_1": [{"id": 1}]})
    job = _job(query={"orders": "SELECT * FROM orders", "refunds": "SELECT * FROM refunds"})

    rows = await ConnectionRunner(capability).run(CONNECTION, job)

    assert rows == [{"query_name": "orders", "id": 1}, {"query_name": "refunds", "id": 1}]
    assert capability.queries == ["SELECT * FROM orders", "SELECT * FROM refunds"]


@pytest.mark.asyncio
async def test_timeout_is_mapped():
    runner = ConnectionRunner(SlowCapability(), timeout_ms=20)
    with pytest.raises(QueryTimeoutError) as exc_info:
        await runner.run(CONNECTION, _job())
    assert exc_info.value.context["timeout_ms"] == 20


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    OSError("connection refused"),
    OperationalError("SELECT 1", {}, Exception("server closed the connection")),
])
async def test_connectivity_errors_are_mapped(fake_capability, error):
    runner = ConnectionRunner(fake_capability({"conn_1": error}))
    with pytest.raises(ConnectivityError) as exc_info:
        await runner.run(CONNECTION, _job())
    assert exc_info.value.context["connection_id"] == "conn_1"
    assert exc_info.value.original_exception is error


@pytest.mark.asyncio
async def test_query_errors_are_mapped(fake_capability):
    runner = ConnectionRunner(fake_capability({"conn_1": ValueError("syntax error at or near FORM")}))
    with pytest.raises(QueryExecutionError) as exc_info:
        await runner.run(CONNECTION, _job())
    assert "syntax error" in exc_info.value.summary


@pytest.mark.asyncio
async def test_multi_query_error_names_the_query(fake_capability):
    runner = ConnectionRunner(fake_capability({"conn_1": ValueError("boom")}))
    job = _job(query={"orders": "SELECT * FROM orders"})
    with pytest.raises(QueryExecutionError) as exc_info:
        await runner.run(CONNECTION, job)
    assert exc_info.value.context["query_name"] == "orders"


@pytest.mark.asyncio
async def test_connection_test_succeeds(fake_capability):
    capability = fake_capability({"conn_1": [{"?column?": 1}]})
    result = await ConnectionRunner(capability).test(CONNECTION)

    assert result.success
    assert result.message == "Connected"
    assert capability.queries == [CONNECTION_TEST_QUERY]


@pytest.mark.asyncio
async def test_connection_test_never_raises(fake_capability):
    capability = fake_capability({"conn_1": OSError("no route to host")})
    result = await ConnectionRunner(capability).test(CONNECTION)

    assert not result.success
    assert "no route to host" in result.message

    slow = await ConnectionRunner(SlowCapability()).test(CONNECTION, timeout_seconds=0.02)
    assert not slow.success
