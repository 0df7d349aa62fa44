"""
JSON document destination (batch-at-end, replace-on-write)
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Sequence
import logging

from core.exceptions import DestinationConfigError, DestinationWriteError
from engine.adapters.base import ConnectionRows, DestinationAdapter, Row, SendResult, WriteContext
from models.base import AdapterCapability, WriteStrategy
from models.job import DestinationConfig

logger = logging.getLogger(__name__)


class JSONFileAdapter(DestinationAdapter):
    """
    Replace a JSON document with the run's result.

    The document is written to a temp file and renamed over the target, so
    readers never see a half-written export.
    """

    name = "json_file"
    capabilities = frozenset({
        AdapterCapability.SEND_MULTI_CONNECTION,
        AdapterCapability.SEND,
    })
    strategy = WriteStrategy.BATCH_AT_END
    required_fields = ("file_path",)

    def resolve_path(self, config: DestinationConfig, context: WriteContext) -> Path:
        template = str(config.get("file_path"))
        try:
            return Path(template.format(**context.placeholders()))
        except (KeyError, IndexError, ValueError) as e:
            raise DestinationConfigError(
                f"Invalid placeholder in JSON file path '{template}'",
                context={"destination_type": self.name, "file_path": template},
                original_exception=e
            )

    def _replace(self, path: Path, document: Dict[str, Any], indent) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=indent, default=str)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _write(self, document: Dict[str, Any], rows_written: int, config: DestinationConfig, context: WriteContext) -> SendResult:
        path = self.resolve_path(config, context)
        try:
            await asyncio.to_thread(self._replace, path, document, config.get("indent", 2))
        except (OSError, TypeError, ValueError) as e:
            raise DestinationWriteError(
                f"Failed to write JSON file {path}",
                context={"destination_type": self.name, "file_path": str(path)},
                original_exception=e
            )
        logger.info(f"Wrote {rows_written} rows to {path}")
        return SendResult.ok(rows_written, f"Wrote {rows_written} rows to {path}")

    def _header(self, context: WriteContext) -> Dict[str, Any]:
        return {
            "jobId": context.job_id,
            "jobName": context.job_name,
            "group": context.group,
            "runTime": context.run_time.isoformat(),
        }

    async def send_multi_connection(
        self,
        entries: Sequence[ConnectionRows],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        total = sum(len(entry.rows) for entry in entries)
        document = {
            **self._header(context),
            "rowCount": total,
            "failedConnections": sum(1 for entry in entries if entry.failed),
            "connections": [entry.to_payload() for entry in entries],
        }
        return await self._write(document, total, config, context)

    async def send(
        self,
        rows: Sequence[Row],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        rows = list(rows)
        document = {**self._header(context), "rowCount": len(rows), "rows": rows}
        return await self._write(document, len(rows), config, context)
