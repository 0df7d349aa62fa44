"""
HTTP webhook destination with retry logic.

This module provides a webhook destination with:
- Exponential backoff retry logic for transient failures
- Rate limiting protection (Retry-After on HTTP 429)
- Chunked payloads so one call never carries an unbounded row set
- Comprehensive error handling with custom exceptions
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence
import logging

import httpx

from core.exceptions import (
    AuthenticationError,
    DestinationConfigError,
    DestinationWriteError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
)
from engine.adapters.base import ConnectionRows, DestinationAdapter, Row, SendResult, WriteContext
from models.base import AdapterCapability, WriteStrategy
from models.job import Connection, DestinationConfig

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("POST", "PUT", "PATCH")


class WebhookAdapter(DestinationAdapter):
    """
    POST JSON payloads to an HTTP endpoint.

    Config:
        url: Endpoint URL
        method: POST (default), PUT or PATCH
        headers: Extra request headers
        batch_size: Maximum rows per request (default 500)

    Attributes:
        max_retries: Maximum number of attempts per request (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
    """

    name = "webhook"
    capabilities = frozenset({
        AdapterCapability.SEND,
        AdapterCapability.SEND_MULTI_CONNECTION,
        AdapterCapability.SEND_PROGRESSIVE,
    })
    strategy = WriteStrategy.STREAMED
    required_fields = ("url",)

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport

    def validate_config(self, config: DestinationConfig) -> None:
        super().validate_config(config)
        method = str(config.get("method", "POST")).upper()
        if method not in ALLOWED_METHODS:
            raise DestinationConfigError(
                f"Unsupported webhook method '{method}'",
                context={"destination_type": self.name, "method": method}
            )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request_with_retry(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any]
    ) -> httpx.Response:
        """
        Send one request, retrying transient failures with exponential backoff.

        Raises:
            AuthenticationError: HTTP 401/403, not retried
            ResourceNotFoundError: HTTP 404, not retried
            RateLimitError: HTTP 429 after max retries
            NetworkError: Timeouts, network errors or 5xx after max retries
            DestinationWriteError: Any other rejected request
        """
        for attempt in range(self.max_retries):
            delay = self.retry_delay * (2 ** attempt)
            try:
                logger.debug(f"Webhook attempt {attempt + 1}/{self.max_retries} to {url}")
                response = await client.request(method, url, headers=headers, json=payload)
            except httpx.TimeoutException as e:
                if attempt < self.max_retries - 1:
                    logger.warning(f"Webhook timeout. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                raise NetworkError(
                    f"Webhook timeout after {self.max_retries} attempts",
                    context={"destination_type": self.name, "url": url, "retry_count": attempt + 1},
                    original_exception=e
                )
            except httpx.TransportError as e:
                if attempt < self.max_retries - 1:
                    logger.warning(f"Webhook network error. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                raise NetworkError(
                    f"Webhook network error after {self.max_retries} attempts",
                    context={"destination_type": self.name, "url": url, "retry_count": attempt + 1},
                    original_exception=e
                )

            context = {
                "destination_type": self.name,
                "url": url,
                "status_code": response.status_code,
                "retry_count": attempt + 1,
            }

            if response.status_code in (401, 403):
                raise AuthenticationError(f"Webhook rejected credentials for {url}", context=context)

            if response.status_code == 404:
                raise ResourceNotFoundError(f"Webhook endpoint not found: {url}", context=context)

            if response.status_code == 429:
                retry_after = self._retry_after(response, delay)
                if attempt < self.max_retries - 1:
                    logger.warning(f"Webhook rate limited. Retrying after {retry_after} seconds")
                    await asyncio.sleep(retry_after)
                    continue
                raise RateLimitError(
                    f"Webhook rate limit exceeded for {url}",
                    context=context,
                    retry_after=int(retry_after)
                )

            if response.status_code >= 500:
                if attempt < self.max_retries - 1:
                    logger.warning(
                        f"Webhook server error {response.status_code}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                context["response_body"] = response.text[:500]
                raise NetworkError(
                    f"Webhook server error after {self.max_retries} attempts",
                    context=context
                )

            if response.status_code >= 400:
                context["response_body"] = response.text[:500]
                raise DestinationWriteError(f"Webhook rejected payload for {url}", context=context)

            return response

        raise DestinationWriteError(
            "Webhook max retries exceeded",
            context={"destination_type": self.name, "url": url}
        )

    @staticmethod
    def _retry_after(response: httpx.Response, default: float) -> float:
        try:
            return float(response.headers.get("Retry-After", default))
        except ValueError:
            return default

    def _chunks(self, rows: Sequence[Row], config: DestinationConfig) -> List[List[Row]]:
        size = max(1, int(config.get("batch_size", 500)))
        rows = list(rows)
        if not rows:
            return [[]]
        return [rows[i:i + size] for i in range(0, len(rows), size)]

    def _envelope(self, context: WriteContext) -> Dict[str, Any]:
        return {
            "jobId": context.job_id,
            "jobName": context.job_name,
            "group": context.group,
            "runTime": context.run_time.isoformat(),
        }

    async def _deliver(self, payloads: List[Dict[str, Any]], config: DestinationConfig) -> int:
        url = str(config.get("url"))
        method = str(config.get("method", "POST")).upper()
        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}

        delivered = 0
        async with self._client() as client:
            for payload in payloads:
                await self._request_with_retry(client, method, url, headers, payload)
                delivered += len(payload.get("rows", []))
        return delivered

    async def send(
        self,
        rows: Sequence[Row],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        payloads = [
            {**self._envelope(context), "rows": chunk}
            for chunk in self._chunks(rows, config)
        ]
        delivered = await self._deliver(payloads, config)
        return SendResult.ok(delivered, f"Delivered {delivered} rows in {len(payloads)} requests")

    async def send_multi_connection(
        self,
        entries: Sequence[ConnectionRows],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        payloads = []
        for entry in entries:
            for chunk in self._chunks(entry.rows, config):
                payloads.append({
                    **self._envelope(context),
                    "connection": entry.connection.metadata(),
                    "connectionFailedMessage": entry.failed_message,
                    "rows": chunk,
                })
        delivered = await self._deliver(payloads, config)
        return SendResult.ok(delivered, f"Delivered {delivered} rows in {len(payloads)} requests")

    async def send_progressive(
        self,
        connection: Connection,
        rows: Sequence[Row],
        config: DestinationConfig,
        context: WriteContext
    ) -> SendResult:
        return await self.send_multi_connection(
            [ConnectionRows(connection=connection, rows=list(rows))], config, context
        )
