"""
Async SQLAlchemy engines for the configured SQL connections.

One engine is kept per connection URL so repeated runs of the same job reuse
the dialect setup. NullPool is used because connections within a run are
queried one at a time and should not linger between runs.
"""

from typing import Dict
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

_engines: Dict[str, AsyncEngine] = {}


def get_engine(url: str) -> AsyncEngine:
    """Get (or lazily create) the async engine for a connection URL"""
    engine = _engines.get(url)
    if engine is None:
        engine = create_async_engine(
            url,
            echo=settings.ENVIRONMENT == "development" and settings.LOG_LEVEL.upper() == "DEBUG",
            poolclass=NullPool,
            future=True
        )
        _engines[url] = engine
    return engine


async def dispose_engines() -> None:
    """Dispose every cached engine (called on shutdown)"""
    for url, engine in list(_engines.items()):
        try:
            await engine.dispose()
        except Exception as e:
            logger.warning(f"Failed to dispose engine: {str(e)}")
        finally:
            _engines.pop(url, None)
