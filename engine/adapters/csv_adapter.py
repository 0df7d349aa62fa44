"""
CSV file destination (progressive append by default)
"""

import asyncio
from pathlib import Path
from typing import List, Sequence, Set, Tuple
import logging

import pandas as pd

from core.exceptions import DestinationConfigError, DestinationWriteError
from engine.adapters.base import DestinationAdapter, Row, SendResult, WriteContext
from models.base import AdapterCapability, WriteStrategy
from models.job import Connection, DestinationConfig

logger = logging.getLogger(__name__)


class CSVAdapter(DestinationAdapter):
    """
    Write rows to a CSV file with pandas.

    Config:
        file_path: Target path; may contain {jobId}, {jobName},
            {connectionId}, {connectionName}, {runTime}
        mode: "append" (default) or "replace"; replace truncates the file
            once per run, later writes of the same run append
        delimiter: Field separator (default ",")
        include_headers: Write a header row to new files (default True)
        connection_column: Optional column name filled with the connection name
    """

    name = "csv"
    capabilities = frozenset({
        AdapterCapability.SEND_PROGRESSIVE,
        AdapterCapability.SEND,
    })
    strategy = WriteStrategy.PROGRESSIVE
    required_fields = ("file_path",)

    def __init__(self):
        # (job_id, run key, path) already truncated in replace mode
        self._replaced: Set[Tuple[str, str, str]] = set()

    def validate_config(self, config: DestinationConfig) -> None:
        super().validate_config(config)
        mode = config.get("mode", "append")
        if mode not in ("append", "replace"):
            raise DestinationConfigError(
                f"Unsupported CSV mode '{mode}'",
                context={"destination_type": self.name, "mode": mode}
            )

    async def prepare(self, config: DestinationConfig, context: WriteContext) -> None:
        self._replaced = {key for key in self._replaced if key[0] != context.job_id}

    def resolve_path(self, config: DestinationConfig, context: WriteContext) -> Path:
        template = str(config.get("file_path"))
        try:
            return Path(template.format(**context.placeholders()))
        except (KeyError, IndexError, ValueError) as e:
            raise DestinationConfigError(
                f"Invalid placeholder in CSV file path '{template}'",
                context={"destination_type": self.name, "file_path": template},
                original_exception=e
            )

    def _write_frame(self, path: Path, rows: List[Row], file_mode: str, header: bool, delimiter: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if not rows:
            path.write_text("", encoding="utf-8")
            return
        df = pd.DataFrame(rows)
        df.to_csv(path, mode=file_mode, header=header, index=False, sep=delimiter)

    async def _write(
        self,
        rows: Sequence[Row],
        config: DestinationConfig,
        context: WriteContext,
        connection_name: str = ""
    ) -> SendResult:
        path = self.resolve_path(config, context)
        rows = list(rows)
        column = config.get("connection_column")
        if column:
            rows = [{column: connection_name, **row} for row in rows]

        replace_key = (context.job_id, context.run_time.isoformat(), str(path))
        truncate = config.get("mode", "append") == "replace" and replace_key not in self._replaced

        if not rows and not truncate:
            return SendResult.ok(0, "No rows to write")

        file_mode = "w" if truncate else "a"
        fresh_file = truncate or not path.exists() or path.stat().st_size == 0
        header = bool(config.get("include_headers", True)) and fresh_file

        try:
            await asyncio.to_thread(
                self._write_frame, path, rows, file_mode, header, config.get("delimiter", ",")
            )
        except (OSError, ValueError) as e:
            raise DestinationWriteError(
                f"Failed to write CSV file {path}",
                context={
                    "destination_type": self.name,
                    "connection_id": context.connection_id,
                    "file_path": str(path)
                },
                original_exception=e
            )

        if truncate:
            self._replaced.add(replace_key)

        logger.info(f"Wrote {len(rows)} rows to {path}")
        return SendResult.ok(len(rows), f"Wrote {len(rows)} rows to {path}")

    async def send_progressive(
        self,
        connection: Connection,
        rows: Sequence[Row],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        return await self._write(
            rows, config, context.for_connection(connection, len(rows)), connection.display_name
        )

    async def send(
        self,
        rows: Sequence[Row],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        return await self._write(rows, config, context)
