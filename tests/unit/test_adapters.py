import json
import pytest
import httpx
import pandas as pd
from datetime import datetime, timedelta, timezone

from core.exceptions import (
    AuthenticationError,
    DestinationConfigError,
    DestinationWriteError,
    NetworkError,
    ResourceNotFoundError,
    UnsupportedWriteStrategyError,
)
from engine.adapters.base import ConnectionRows, DestinationAdapter, WriteContext
from engine.adapters.csv_adapter import CSVAdapter
from engine.adapters.json_file import JSONFileAdapter
from engine.adapters.registry import AdapterRegistry, default_registry
from engine.adapters.webhook import WebhookAdapter
from engine.retry import send_with_retry
from models.base import AdapterCapability, WriteStrategy
from models.job import Connection, DestinationConfig

NORTH = Connection(id="north", name="North", database="sales_north", group="partner", partner="Acme")
SOUTH = Connection(id="south", name="South", database="sales_south")
RUN_TIME = datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc)
WEBHOOK_URL = "https://hooks.example.com/ingest"


class ProgressiveOnly(DestinationAdapter):
    name = "progressive_only"
    capabilities = frozenset({AdapterCapability.SEND_PROGRESSIVE})
    strategy = WriteStrategy.PROGRESSIVE
    required_fields = ("target",)


def _context(**kwargs):
    options = {"job_id": "job_1", "job_name": "Daily sales", "run_time": RUN_TIME}
    options.update(kwargs)
    return WriteContext(**options)


# ============================================================================
# Contract
# ============================================================================

def test_supported_strategies_follow_capabilities():
    adapter = ProgressiveOnly()
    assert adapter.supported_strategies() == {WriteStrategy.PROGRESSIVE}
    assert adapter.select_strategy(DestinationConfig(type="progressive_only")) == WriteStrategy.PROGRESSIVE


def test_unsupported_strategy_override_is_a_config_error():
    config = DestinationConfig(type="progressive_only", strategy="batch_at_end")
    with pytest.raises(DestinationConfigError) as exc_info:
        ProgressiveOnly().select_strategy(config)
    assert exc_info.value.context["supported"] == ["progressive"]


def test_missing_required_fields_are_listed():
    with pytest.raises(DestinationConfigError) as exc_info:
        ProgressiveOnly().validate_config(DestinationConfig(type="progressive_only", target=""))
    assert exc_info.value.context["missing_fields"] == ["target"]


def test_config_options_accept_camel_case():
    config = DestinationConfig(type="csv", filePath="/tmp/out.csv")
    assert config.get("file_path") == "/tmp/out.csv"
    assert config.has("file_path")


@pytest.mark.asyncio
async def test_undeclared_methods_raise():
    adapter = ProgressiveOnly()
    with pytest.raises(UnsupportedWriteStrategyError):
        await adapter.send([], DestinationConfig(type="progressive_only"), _context())


def test_connection_rows_payload():
    payload = ConnectionRows(NORTH, failed_message="timeout").to_payload()

    assert payload["connectionId"] == "north"
    assert payload["connectionName"] == "sales_north"
    assert payload["partner"] == "Acme"
    assert payload["rowCount"] == 0
    assert payload["connectionFailedMessage"] == "timeout"

    assert "connectionFailedMessage" not in ConnectionRows(SOUTH, rows=[{"id": 1}]).to_payload()


def test_write_context_placeholders():
    placeholders = _context().for_connection(SOUTH, 3).placeholders()
    assert placeholders == {
        "jobId": "job_1",
        "jobName": "Daily sales",
        "connectionId": "south",
        "connectionName": "sales_south",
        "runTime": "20240115T060000",
    }


def test_registry_lookup():
    registry = default_registry(retry_delay=0)
    assert registry.names() == ["csv", "json_file", "webhook"]
    assert "csv" in registry

    with pytest.raises(DestinationConfigError):
        registry.get("ftp")


def test_registry_rejects_nameless_adapter():
    with pytest.raises(ValueError):
        AdapterRegistry().register(DestinationAdapter())


# ============================================================================
# CSV
# ============================================================================

@pytest.mark.asyncio
async def test_csv_progressive_appends_with_one_header(tmp_path):
    path = tmp_path / "out.csv"
    adapter = CSVAdapter()
    config = DestinationConfig(type="csv", file_path=str(path))

    await adapter.send_progressive(NORTH, [{"id": 1, "amount": 1.5}], config, _context())
    await adapter.send_progressive(SOUTH, [{"id": 2, "amount": 2.5}], config, _context())

    df = pd.read_csv(path)
    assert list(df["id"]) == [1, 2]
    assert path.read_text().count("id,amount") == 1


@pytest.mark.asyncio
async def test_csv_replace_truncates_once_per_run(tmp_path):
    path = tmp_path / "out.csv"
    adapter = CSVAdapter()
    config = DestinationConfig(type="csv", file_path=str(path), mode="replace")

    first = _context()
    await adapter.prepare(config, first)
    await adapter.send_progressive(NORTH, [{"id": 1}], config, first)
    await adapter.send_progressive(SOUTH, [{"id": 2}], config, first)
    assert list(pd.read_csv(path)["id"]) == [1, 2]

    second = _context(run_time=RUN_TIME + timedelta(hours=1))
    await adapter.prepare(config, second)
    await adapter.send_progressive(NORTH, [{"id": 3}], config, second)
    assert list(pd.read_csv(path)["id"]) == [3]


@pytest.mark.asyncio
async def test_csv_path_placeholders_and_connection_column(tmp_path):
    adapter = CSVAdapter()
    config = DestinationConfig(
        type="csv",
        file_path=str(tmp_path / "{jobId}_{connectionId}_{runTime}.csv"),
        connection_column="source",
        delimiter=";",
    )

    await adapter.send_progressive(SOUTH, [{"id": 7}], config, _context())

    path = tmp_path / "job_1_south_20240115T060000.csv"
    df = pd.read_csv(path, sep=";")
    assert list(df.columns) == ["source", "id"]
    assert df["source"].tolist() == ["sales_south"]


@pytest.mark.asyncio
async def test_csv_bad_placeholder_is_a_config_error(tmp_path):
    config = DestinationConfig(type="csv", file_path=str(tmp_path / "{nope}.csv"))
    with pytest.raises(DestinationConfigError):
        await CSVAdapter().send([{"id": 1}], config, _context())


def test_csv_validates_mode():
    with pytest.raises(DestinationConfigError):
        CSVAdapter().validate_config(DestinationConfig(type="csv", file_path="out.csv", mode="upsert"))
    with pytest.raises(DestinationConfigError):
        CSVAdapter().validate_config(DestinationConfig(type="csv"))


@pytest.mark.asyncio
async def test_csv_write_failure_raises_write_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    config = DestinationConfig(type="csv", file_path=str(blocker / "out.csv"))

    with pytest.raises(DestinationWriteError):
        await CSVAdapter().send([{"id": 1}], config, _context())


# ============================================================================
# JSON file
# ============================================================================

@pytest.mark.asyncio
async def test_json_file_multi_connection_document(tmp_path):
    path = tmp_path / "exports" / "{jobId}.json"
    config = DestinationConfig(type="json_file", file_path=str(path))
    entries = [
        ConnectionRows(NORTH, rows=[{"id": 1}, {"id": 2}]),
        ConnectionRows(SOUTH, failed_message="Query timed out"),
    ]

    result = await JSONFileAdapter().send_multi_connection(entries, config, _context())

    assert result.success
    assert result.rows_written == 2
    written = tmp_path / "exports" / "job_1.json"
    document = json.loads(written.read_text())
    assert document["jobId"] == "job_1"
    assert document["rowCount"] == 2
    assert document["failedConnections"] == 1
    assert [c["connectionId"] for c in document["connections"]] == ["north", "south"]
    assert document["connections"][1]["connectionFailedMessage"] == "Query timed out"
    assert [p.name for p in written.parent.iterdir()] == ["job_1.json"]


@pytest.mark.asyncio
async def test_json_file_send_replaces_document(tmp_path):
    path = tmp_path / "out.json"
    config = DestinationConfig(type="json_file", file_path=str(path))
    adapter = JSONFileAdapter()

    await adapter.send([{"id": 1}, {"id": 2}], config, _context())
    await adapter.send([{"id": 3}], config, _context())

    document = json.loads(path.read_text())
    assert document["rows"] == [{"id": 3}]
    assert document["rowCount"] == 1


# ============================================================================
# Webhook
# ============================================================================

def _webhook(responses, max_retries=3):
    """Adapter whose transport replays ``responses`` and records requests"""
    requests = []
    replies = iter(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return next(replies)

    adapter = WebhookAdapter(max_retries=max_retries, retry_delay=0, transport=httpx.MockTransport(handler))
    return adapter, requests


def _webhook_config(**kwargs):
    return DestinationConfig(type="webhook", url=WEBHOOK_URL, **kwargs)


@pytest.mark.asyncio
async def test_webhook_chunks_rows_per_connection():
    adapter, requests = _webhook([httpx.Response(200) for _ in range(3)])
    entries = [
        ConnectionRows(NORTH, rows=[{"id": 1}, {"id": 2}, {"id": 3}]),
        ConnectionRows(SOUTH, failed_message="Query timed out"),
    ]

    result = await adapter.send_multi_connection(entries, _webhook_config(batch_size=2), _context(group="retail"))

    assert result.rows_written == 3
    bodies = [json.loads(r.content) for r in requests]
    assert [len(b["rows"]) for b in bodies] == [2, 1, 0]
    assert bodies[0]["jobId"] == "job_1"
    assert bodies[0]["group"] == "retail"
    assert bodies[0]["connection"]["connectionId"] == "north"
    assert bodies[2]["connectionFailedMessage"] == "Query timed out"


@pytest.mark.asyncio
async def test_webhook_retries_server_errors():
    adapter, requests = _webhook([httpx.Response(503), httpx.Response(200)])
    result = await adapter.send([{"id": 1}], _webhook_config(), _context())

    assert result.success
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_webhook_gives_up_after_max_retries():
    adapter, requests = _webhook([httpx.Response(500) for _ in range(3)])
    with pytest.raises(NetworkError):
        await adapter.send([{"id": 1}], _webhook_config(), _context())
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_webhook_retries_are_not_repeated_by_the_write_retry_loop():
    adapter, requests = _webhook([httpx.Response(500) for _ in range(3)])

    async def send():
        return await adapter.send([{"id": 1}], _webhook_config(), _context())

    with pytest.raises(NetworkError) as exc_info:
        await send_with_retry(send, "webhook send", max_retries=3, retry_delay=0)

    assert len(requests) == 3
    assert exc_info.value.context["retry_count"] == 3


@pytest.mark.asyncio
async def test_webhook_does_not_retry_auth_failures():
    adapter, requests = _webhook([httpx.Response(401)])
    with pytest.raises(AuthenticationError):
        await adapter.send([{"id": 1}], _webhook_config(), _context())
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_webhook_missing_endpoint():
    adapter, requests = _webhook([httpx.Response(404)])
    with pytest.raises(ResourceNotFoundError):
        await adapter.send([{"id": 1}], _webhook_config(), _context())


@pytest.mark.asyncio
async def test_webhook_honours_retry_after():
    adapter, requests = _webhook([
        httpx.Response(429, headers={"Retry-After": "0"}),
        httpx.Response(200),
    ])
    result = await adapter.send([{"id": 1}], _webhook_config(), _context())

    assert result.success
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_webhook_rejected_payload_is_not_retried():
    adapter, requests = _webhook([httpx.Response(422, text="bad payload")])
    with pytest.raises(DestinationWriteError) as exc_info:
        await adapter.send([{"id": 1}], _webhook_config(), _context())

    assert exc_info.value.context["status_code"] == 422
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_webhook_method_and_headers():
    adapter, requests = _webhook([httpx.Response(200)])
    config = _webhook_config(method="put", headers={"X-Token": "secret"})
    adapter.validate_config(config)

    await adapter.send_progressive(SOUTH, [{"id": 1}], config, _context())

    assert requests[0].method == "PUT"
    assert requests[0].headers["X-Token"] == "secret"


def test_webhook_rejects_unknown_method():
    with pytest.raises(DestinationConfigError):
        WebhookAdapter().validate_config(_webhook_config(method="DELETE"))
