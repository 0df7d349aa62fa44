"""
Registry of destination adapters keyed by destination type
"""

from typing import Dict, List, Optional
import logging

from core.exceptions import DestinationConfigError
from engine.adapters.base import DestinationAdapter
from engine.adapters.csv_adapter import CSVAdapter
from engine.adapters.json_file import JSONFileAdapter
from engine.adapters.webhook import WebhookAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    def __init__(self):
        self._adapters: Dict[str, DestinationAdapter] = {}

    def register(self, adapter: DestinationAdapter) -> None:
        if not adapter.name:
            raise ValueError(f"{type(adapter).__name__} has no name")
        if adapter.name in self._adapters:
            logger.info(f"Replacing destination adapter '{adapter.name}'")
        self._adapters[adapter.name] = adapter

    def get(self, destination_type: str) -> DestinationAdapter:
        adapter = self._adapters.get(destination_type)
        if adapter is None:
            raise DestinationConfigError(
                f"Unknown destination type '{destination_type}'",
                context={"destination_type": destination_type, "known_types": self.names()}
            )
        return adapter

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def __contains__(self, destination_type: str) -> bool:
        return destination_type in self._adapters


def default_registry(
    max_retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = 30.0
) -> AdapterRegistry:
    """Registry with the bundled csv, webhook and json_file adapters"""
    registry = AdapterRegistry()
    registry.register(CSVAdapter())
    registry.register(WebhookAdapter(max_retries=max_retries, retry_delay=retry_delay, timeout=timeout))
    registry.register(JSONFileAdapter())
    return registry
