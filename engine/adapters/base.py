"""
Destination adapter contract.

Each destination kind declares the write methods it implements through a
closed set of capabilities; the executor picks a write strategy from that
set and only ever calls declared methods.
"""

from abc import ABC
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from core.exceptions import DestinationConfigError, UnsupportedWriteStrategyError
from models.base import AdapterCapability, WriteStrategy
from models.job import Connection, DestinationConfig

Row = Dict[str, Any]

# Capabilities that can carry each write strategy, in order of preference
STRATEGY_CAPABILITIES: Dict[WriteStrategy, Tuple[AdapterCapability, ...]] = {
    WriteStrategy.PROGRESSIVE: (AdapterCapability.SEND_PROGRESSIVE,),
    WriteStrategy.STREAMED: (AdapterCapability.SEND_MULTI_CONNECTION, AdapterCapability.SEND),
    WriteStrategy.BATCH_AT_END: (AdapterCapability.SEND_MULTI_CONNECTION, AdapterCapability.SEND),
}


@dataclass
class SendResult:
    success: bool
    rows_written: int = 0
    message: str = ""

    @classmethod
    def ok(cls, rows_written: int = 0, message: str = "") -> "SendResult":
        return cls(success=True, rows_written=rows_written, message=message)

    @classmethod
    def failed(cls, message: str) -> "SendResult":
        return cls(success=False, message=message)


@dataclass
class ConnectionRows:
    """Rows of one connection, or the failure message when its query failed"""
    connection: Connection
    rows: List[Row] = field(default_factory=list)
    failed_message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.failed_message is not None

    def with_rows(self, rows: List[Row]) -> "ConnectionRows":
        return replace(self, rows=rows)

    def to_payload(self) -> Dict[str, Any]:
        """Connection metadata plus rows, as handed to external systems"""
        payload = self.connection.metadata()
        payload["rowCount"] = len(self.rows)
        payload["rows"] = self.rows
        if self.failed_message is not None:
            payload["connectionFailedMessage"] = self.failed_message
        return payload


@dataclass
class WriteContext:
    """Run metadata available to adapters (file name placeholders, payload enrichment)"""
    job_id: str
    job_name: str
    run_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    group: Optional[str] = None
    connection_id: Optional[str] = None
    connection_name: Optional[str] = None
    row_count: int = 0

    def for_connection(self, connection: Connection, row_count: int) -> "WriteContext":
        return replace(
            self,
            connection_id=connection.id,
            connection_name=connection.display_name,
            row_count=row_count
        )

    def placeholders(self) -> Dict[str, str]:
        return {
            "jobId": self.job_id,
            "jobName": self.job_name,
            "connectionId": self.connection_id or "all",
            "connectionName": self.connection_name or "all",
            "runTime": self.run_time.strftime("%Y%m%dT%H%M%S"),
        }


class DestinationAdapter(ABC):
    """
    Base class for destination kinds.

    Subclasses set:
        name: Destination ``type`` they handle
        capabilities: Write methods they implement
        strategy: Default write strategy
        required_fields: Destination config fields that must be present

    and override the send methods matching their capabilities.
    """

    name: str = ""
    capabilities: FrozenSet[AdapterCapability] = frozenset()
    strategy: WriteStrategy = WriteStrategy.BATCH_AT_END
    required_fields: Tuple[str, ...] = ()

    def supports(self, capability: AdapterCapability) -> bool:
        return capability in self.capabilities

    def supported_strategies(self) -> Set[WriteStrategy]:
        return {
            strategy
            for strategy, options in STRATEGY_CAPABILITIES.items()
            if any(self.supports(c) for c in options)
        }

    def select_strategy(self, config: DestinationConfig) -> WriteStrategy:
        """Configured override if declared, else the adapter default"""
        strategy = config.strategy or self.strategy
        if strategy not in self.supported_strategies():
            raise DestinationConfigError(
                f"Destination '{self.name}' does not support the {strategy.value} write strategy",
                context={
                    "destination_type": self.name,
                    "strategy": strategy.value,
                    "supported": sorted(s.value for s in self.supported_strategies())
                }
            )
        return strategy

    def validate_config(self, config: DestinationConfig) -> None:
        missing = [f for f in self.required_fields if not config.has(f)]
        if missing:
            raise DestinationConfigError(
                f"Destination '{self.name}' is missing required fields: {', '.join(missing)}",
                context={"destination_type": self.name, "missing_fields": missing}
            )

    async def prepare(self, config: DestinationConfig, context: WriteContext) -> None:
        """Called once per run before the first write"""
        return None

    def _unsupported(self, capability: AdapterCapability):
        return UnsupportedWriteStrategyError(
            f"Destination '{self.name}' does not implement {capability.value}",
            context={"destination_type": self.name, "capability": capability.value}
        )

    async def send(
        self,
        rows: Sequence[Row],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        """Single-shot write of a whole dataset"""
        raise self._unsupported(AdapterCapability.SEND)

    async def send_multi_connection(
        self,
        entries: Sequence[ConnectionRows],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        """Write a per-connection breakdown, including failed connections"""
        raise self._unsupported(AdapterCapability.SEND_MULTI_CONNECTION)

    async def send_progressive(
        self,
        connection: Connection,
        rows: Sequence[Row],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        """Append-safe write of one connection's rows; called many times per run"""
        raise self._unsupported(AdapterCapability.SEND_PROGRESSIVE)
