"""
Runs a job's query against one connection through the SQL capability.

Every failure is mapped onto a ConnectionExecutionError subclass so the
executor can record it against the connection and move on.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol
import logging

from sqlalchemy.exc import InterfaceError, OperationalError

from core.exceptions import (
    ConnectionExecutionError,
    ConnectivityError,
    QueryExecutionError,
    QueryTimeoutError,
)
from models.job import Connection, Job

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

CONNECTION_TEST_QUERY = "SELECT 1"


class QueryCapability(Protocol):
    """The external "run query, get rows" capability"""

    async def run_query(self, connection: Connection, query_text: str, timeout_ms: int) -> List[Row]:
        ...


@dataclass
class ConnectionTestResult:
    connection_id: str
    success: bool
    message: str
    duration_ms: int


class ConnectionRunner:
    """
    Execute one job query (or set of named queries) on one connection.

    Args:
        capability: SQL capability used to run queries
        timeout_ms: Per-query timeout
    """

    def __init__(self, capability: QueryCapability, timeout_ms: int = 300000):
        self.capability = capability
        self.timeout_ms = timeout_ms

    async def _execute(
        self,
        connection: Connection,
        query_text: str,
        timeout_ms: int,
        query_name: Optional[str] = None
    ) -> List[Row]:
        context = {"connection_id": connection.id, "connection_name": connection.name}
        if query_name:
            context["query_name"] = query_name

        try:
            rows = await asyncio.wait_for(
                self.capability.run_query(connection, query_text, timeout_ms),
                timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError as e:
            raise QueryTimeoutError(
                f"Query timed out after {timeout_ms} ms",
                context={**context, "timeout_ms": timeout_ms},
                original_exception=e
            )
        except ConnectionExecutionError:
            raise
        except (OperationalError, InterfaceError, OSError) as e:
            raise ConnectivityError(
                f"Could not reach connection {connection.name}",
                context=context,
                original_exception=e
            )
        except Exception as e:
            raise QueryExecutionError(
                f"Query failed on connection {connection.name}",
                context=context,
                original_exception=e
            )

        return [dict(row) for row in rows or []]

    async def run(self, connection: Connection, job: Job) -> List[Row]:
        """
        Run the job's query on the connection.

        Multi-query jobs run each named query in order; their rows are tagged
        with ``query_name`` and concatenated.

        Raises:
            QueryTimeoutError: A query exceeded the timeout
            ConnectivityError: The connection could not be reached
            QueryExecutionError: The query failed
        """
        if not job.is_multi_query:
            rows = await self._execute(connection, job.query, self.timeout_ms)
            logger.debug(f"Connection {connection.id} returned {len(rows)} rows")
            return rows

        all_rows: List[Row] = []
        for query_name, query_text in job.query.items():
            rows = await self._execute(connection, query_text, self.timeout_ms, query_name)
            all_rows.extend({"query_name": query_name, **row} for row in rows)
        logger.debug(f"Connection {connection.id} returned {len(all_rows)} rows from {len(job.query)} queries")
        return all_rows

    async def test(self, connection: Connection, timeout_seconds: float = 30) -> ConnectionTestResult:
        """Probe a connection with a trivial query; never raises"""
        started = time.monotonic()
        try:
            await self._execute(connection, CONNECTION_TEST_QUERY, int(timeout_seconds * 1000))
            success, message = True, "Connected"
        except ConnectionExecutionError as e:
            success, message = False, e.summary
        duration_ms = int((time.monotonic() - started) * 1000)
        return ConnectionTestResult(connection.id, success, message, duration_ms)
