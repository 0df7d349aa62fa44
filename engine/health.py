"""
Periodic connection health probing
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
import logging

from engine.connection_runner import ConnectionRunner
from models.job import Connection

logger = logging.getLogger(__name__)


@dataclass
class ConnectionHealth:
    connection_id: str
    connection_name: str
    status: str = "not-tested"
    message: str = ""
    duration_ms: Optional[int] = None
    last_tested: Optional[datetime] = None


class ConnectionHealthProbe:
    """
    Runs a trivial query against connections and keeps the latest result.

    Probes run concurrently; this is independent of job runs, which always
    query their connections one at a time.
    """

    def __init__(self, runner: ConnectionRunner, timeout_seconds: float = 30):
        self.runner = runner
        self.timeout_seconds = timeout_seconds
        self._results: Dict[str, ConnectionHealth] = {}

    async def _probe_one(self, connection: Connection) -> ConnectionHealth:
        result = await self.runner.test(connection, self.timeout_seconds)
        health = ConnectionHealth(
            connection_id=connection.id,
            connection_name=connection.display_name,
            status="connected" if result.success else "failed",
            message=result.message,
            duration_ms=result.duration_ms,
            last_tested=datetime.now(timezone.utc)
        )
        self._results[connection.id] = health
        return health

    async def probe(self, connections: Iterable[Connection]) -> List[ConnectionHealth]:
        unique = list({c.id: c for c in connections}.values())
        if not unique:
            return []

        logger.info(f"Probing {len(unique)} connections")
        results = await asyncio.gather(*(self._probe_one(c) for c in unique))

        failed = [r for r in results if r.status == "failed"]
        if failed:
            logger.warning(
                f"{len(failed)}/{len(results)} connections failed health check: "
                + ", ".join(f"{r.connection_name} ({r.message})" for r in failed)
            )
        else:
            logger.info(f"All {len(results)} connections healthy")
        return results

    def status(self, connection: Connection) -> ConnectionHealth:
        return self._results.get(
            connection.id,
            ConnectionHealth(connection_id=connection.id, connection_name=connection.display_name)
        )

    def results(self) -> List[ConnectionHealth]:
        return list(self._results.values())
