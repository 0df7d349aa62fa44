"""
Retry helper for destination adapter calls
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional
import logging

from core.exceptions import ConfigurationError, DestinationWriteError, EngineException, NonRetryableError
from engine.adapters.base import SendResult

logger = logging.getLogger(__name__)


async def send_with_retry(
    call: Callable[[], Awaitable[Optional[SendResult]]],
    description: str,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    context: Optional[Dict[str, Any]] = None
) -> SendResult:
    """
    Await ``call`` until it succeeds, with exponential backoff.

    A raised exception and a ``SendResult`` with ``success=False`` are both
    failures. Non-retryable and configuration errors are re-raised at once, as
    are errors carrying a ``retry_count`` (the adapter already retried them).

    Raises:
        DestinationWriteError: All attempts failed
    """
    attempts = max(1, max_retries)
    last_exception: Optional[Exception] = None
    message = ""

    for attempt in range(attempts):
        try:
            result = await call()
        except (NonRetryableError, ConfigurationError):
            raise
        except EngineException as e:
            if "retry_count" in e.context:
                raise
            last_exception = e
            message = e.summary
        except Exception as e:
            last_exception = e
            message = getattr(e, "summary", None) or str(e) or type(e).__name__
        else:
            if result is None:
                return SendResult.ok()
            if result.success:
                return result
            last_exception = None
            message = result.message or "destination reported failure"

        if attempt < attempts - 1:
            delay = retry_delay * (2 ** attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{attempts}): {message}. "
                f"Retrying in {delay} seconds"
            )
            if delay > 0:
                await asyncio.sleep(delay)

    raise DestinationWriteError(
        f"{description} failed after {attempts} attempts: {message}",
        context={**(context or {}), "retry_count": attempts},
        original_exception=last_exception
    )
