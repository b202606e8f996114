"""
Serialized REST request scheduler.

- One request in flight per scheduler, served in submission order
- Global 429 window gates every route; exhausted route buckets gate their route
- 429: wait the server's retry-after and retry (does not use up an attempt)
- Network failure: 2**index seconds backoff, up to max_request_attempts
- Other non-2xx: APIError, no retry
- Fixed courtesy delay between queued requests
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp
import orjson

from gatecord.connectors.backoff import compute_backoff_delay
from gatecord.connectors.discord.types import ClientConfig, SchedulerMetrics
from gatecord.connectors.errors import APIError, RateLimitWait, TransportError
from gatecord.connectors.ratelimit import (
    HEADER_GLOBAL,
    HEADER_RETRY_AFTER,
    BucketRegistry,
    GlobalRateLimit,
    route_key,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

UNKNOWN_ERROR_MESSAGE = "Unknown error"
DEFAULT_RETRY_AFTER_MS = 1000

# Failures worth retrying: the request may never have reached the server
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (aiohttp.ClientError, OSError, TimeoutError)


@dataclass
class _QueuedRequest:
    """Internal representation of a queued request."""

    endpoint: str
    method: str
    body: Any
    headers: dict[str, str]
    enqueue_time_ms: int
    future: asyncio.Future[Any]


class RequestScheduler:
    """
    FIFO, single-flight executor for REST calls against a rate-limited API.

    Trades throughput for a guaranteed absence of bursts: regardless of route, no
    second request starts before the previous one has resolved or rejected.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        registry: BucketRegistry | None = None,
        time_fn: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            config: Client configuration (token, base URL, retry settings).
            registry: Bucket registry; a private one is created if omitted.
            time_fn: Epoch-milliseconds clock for deterministic testing.
            sleep_fn: Sleep primitive (seconds) for deterministic testing.
        """
        self._config = config or ClientConfig()
        self._time_fn = time_fn
        self._sleep_fn = sleep_fn or asyncio.sleep
        self._registry = registry or BucketRegistry(_time_fn=time_fn)
        self._global_limit: GlobalRateLimit | None = None

        self._queue: deque[_QueuedRequest] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._session: aiohttp.ClientSession | None = None
        self._closed = False

        self.metrics = SchedulerMetrics()

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def registry(self) -> BucketRegistry:
        return self._registry

    @property
    def global_limit(self) -> GlobalRateLimit | None:
        return self._global_limit

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _now_ms(self) -> float:
        if self._time_fn is not None:
            return self._time_fn()
        return time.time() * 1000

    async def _sleep_ms(self, delay_ms: float) -> None:
        if delay_ms <= 0:
            return
        self.metrics.total_wait_ms += int(delay_ms)
        await self._sleep_fn(delay_ms / 1000)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            total = (
                self._config.request_timeout_ms / 1000
                if self._config.request_timeout_ms is not None
                else None
            )
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=total))
        return self._session

    async def submit(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """
        Queue a REST call and wait for its outcome.

        Args:
            endpoint: Path relative to the REST base URL (may include a query string).
            method: HTTP method.
            body: JSON-serializable body, or None.
            headers: Extra headers; override the defaults.

        Returns:
            Decoded JSON response, or None for 204/empty responses.

        Raises:
            APIError: Non-success, non-rate-limited response.
            aiohttp.ClientError: Network failure persisting through every attempt.
            TransportError: Scheduler closed before the request ran.
        """
        if self._closed:
            raise TransportError("Request scheduler closed")

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._queue.append(
            _QueuedRequest(
                endpoint=endpoint,
                method=method.upper(),
                body=body,
                headers=dict(headers or {}),
                enqueue_time_ms=int(self._now_ms()),
                future=future,
            )
        )
        self.metrics.requests_submitted += 1
        self.metrics.current_queue_depth = len(self._queue)

        if not self.is_processing:
            self._worker = asyncio.create_task(self._process_queue())

        return await future

    async def _process_queue(self) -> None:
        """Drain the queue one request at a time."""
        while self._queue:
            await self._wait_for_global_limit()

            request = self._queue.popleft()
            self.metrics.current_queue_depth = len(self._queue)
            key = route_key(request.method, request.endpoint)

            try:
                await self._wait_for_bucket(key)
                result = await self._execute(request, key)
            except asyncio.CancelledError:
                self._settle(request, exc=TransportError("Request scheduler closed"))
                raise
            except Exception as e:
                self.metrics.requests_failed += 1
                self._settle(request, exc=e)
            else:
                self.metrics.requests_succeeded += 1
                self._settle(request, result=result)

            await self._sleep_ms(self._config.inter_request_delay_ms)

    def _settle(
        self,
        request: _QueuedRequest,
        *,
        result: Any = None,
        exc: BaseException | None = None,
    ) -> None:
        """Resolve or reject the caller's future, unless the caller gave up on it."""
        if request.future.done():
            return
        if exc is not None:
            request.future.set_exception(exc)
        else:
            request.future.set_result(result)

    async def _wait_for_global_limit(self) -> None:
        """Block while a global window is active, then clear it."""
        while self._global_limit is not None:
            wait_ms = self._global_limit.wait_time_ms(self._now_ms())
            if wait_ms <= 0:
                self._global_limit = None
                break
            logger.info("Global rate limit active, waiting", extra={"delay_ms": int(wait_ms)})
            await self._sleep_ms(wait_ms)

    async def _wait_for_bucket(self, key: str) -> None:
        """Block until the route's bucket has quota or has reset."""
        wait_ms = self._registry.wait_time_ms(key)
        if wait_ms > 0:
            self.metrics.bucket_waits += 1
            logger.info(
                "Route rate limit active, waiting",
                extra={"route": key, "delay_ms": int(wait_ms)},
            )
            await self._sleep_ms(wait_ms)

    async def _execute(self, request: _QueuedRequest, key: str) -> Any:
        """
        Run one request through the retry policy.

        Raises:
            APIError: Non-success, non-rate-limited response.
            aiohttp.ClientError | OSError | TimeoutError: After the last attempt.
        """
        attempt = 0
        while True:
            try:
                return await self._send(request, key)
            except RateLimitWait as wait:
                self.metrics.rate_limit_hits += 1
                if wait.is_global:
                    self.metrics.global_rate_limit_hits += 1
                    self._global_limit = GlobalRateLimit(
                        reset_at_ms=self._now_ms() + wait.retry_after_ms
                    )
                logger.warning(
                    "Rate limited",
                    extra={
                        "route": key,
                        "global": wait.is_global,
                        "retry_after_ms": wait.retry_after_ms,
                    },
                )
                await self._sleep_ms(wait.retry_after_ms)
            except TRANSIENT_ERRORS as e:
                attempt += 1
                if attempt >= self._config.max_request_attempts:
                    logger.error(
                        "Request failed, attempts exhausted",
                        extra={"route": key, "attempts": attempt, "error": str(e)},
                    )
                    raise
                delay_ms = compute_backoff_delay(self._config.retry_backoff, attempt - 1)
                self.metrics.transient_retries += 1
                logger.warning(
                    "Request failed, retrying",
                    extra={
                        "route": key,
                        "attempt": attempt,
                        "max_attempts": self._config.max_request_attempts,
                        "delay_ms": delay_ms,
                        "error": str(e),
                    },
                )
                await self._sleep_ms(delay_ms)

    async def _send(self, request: _QueuedRequest, key: str) -> Any:
        """
        Perform the HTTP call and classify the response.

        Raises:
            RateLimitWait: On 429.
            APIError: On any other non-2xx status.
        """
        url = f"{self._config.resolved_rest_base_url}{request.endpoint}"
        headers = {
            "Authorization": self._config.authorization,
            "Content-Type": "application/json",
            **request.headers,
        }
        data = orjson.dumps(request.body) if request.body is not None else None

        session = await self._get_session()
        async with session.request(request.method, url, data=data, headers=headers) as response:
            # Headers are the sole source of truth, success or not
            self._registry.update_from_headers(key, response.headers)

            if response.status == 429:
                raise await self._rate_limit_wait(response, key)

            if not 200 <= response.status < 300:
                message = await self._error_message(response)
                logger.error(
                    "HTTP error",
                    extra={"status": response.status, "route": key, "error": message},
                )
                raise APIError(message, response.status, request.endpoint)

            if response.status == 204:
                return None

            raw = await response.read()
            if not raw:
                return None
            return orjson.loads(raw)

    async def _rate_limit_wait(
        self,
        response: aiohttp.ClientResponse,
        key: str,
    ) -> RateLimitWait:
        """Build the RateLimitWait for a 429 from its headers and body."""
        payload: dict[str, Any] = {}
        with contextlib.suppress(orjson.JSONDecodeError, aiohttp.ClientError):
            decoded = orjson.loads(await response.read() or b"{}")
            if isinstance(decoded, dict):
                payload = decoded

        # Non-positive values are skipped; every 429 waits before retrying
        retry_after_ms: int | None = None
        header = response.headers.get(HEADER_RETRY_AFTER)
        if header is not None:
            with contextlib.suppress(ValueError, OverflowError):
                parsed = int(float(header) * 1000)
                if parsed > 0:
                    retry_after_ms = parsed
        body_value = payload.get("retry_after")
        if retry_after_ms is None and isinstance(body_value, (int, float)):
            parsed = int(body_value * 1000)
            if parsed > 0:
                retry_after_ms = parsed
        if retry_after_ms is None:
            retry_after_ms = DEFAULT_RETRY_AFTER_MS

        is_global = (
            str(response.headers.get(HEADER_GLOBAL, "")).lower() == "true"
            or payload.get("global") is True
        )
        return RateLimitWait(
            "Rate limit exceeded (429)",
            retry_after_ms=retry_after_ms,
            is_global=is_global,
            route_key=key,
        )

    async def _error_message(self, response: aiohttp.ClientResponse) -> str:
        """Extract the API's error message, or a placeholder."""
        try:
            decoded = orjson.loads(await response.read())
        except (orjson.JSONDecodeError, aiohttp.ClientError):
            return UNKNOWN_ERROR_MESSAGE
        if isinstance(decoded, dict) and isinstance(decoded.get("message"), str):
            return str(decoded["message"])
        return UNKNOWN_ERROR_MESSAGE

    async def close(self) -> None:
        """Stop the worker, reject queued requests and close the HTTP session."""
        self._closed = True

        if self._worker and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None

        while self._queue:
            request = self._queue.popleft()
            self.metrics.requests_failed += 1
            self._settle(request, exc=TransportError("Request scheduler closed"))
        self.metrics.current_queue_depth = 0

        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_status(self) -> dict[str, int | float | bool]:
        """Get current scheduler status for observability."""
        now_ms = self._now_ms()
        return {
            "queue_depth": len(self._queue),
            "processing": self.is_processing,
            "global_limited": self._global_limit is not None
            and self._global_limit.is_active(now_ms),
            **self._registry.get_status(),
        }
