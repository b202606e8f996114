"""
Tests for the REST RequestScheduler.

Uses a fake clock whose sleep advances time, and patched aiohttp sessions:
- FIFO, single-flight execution
- Route bucket and global rate-limit gating
- 429 retries do not consume attempts
- Transient failures back off 1s, 2s and give up after 3 attempts
- Other errors are terminal
"""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import orjson
import pytest

from gatecord.connectors.discord.scheduler import RequestScheduler
from gatecord.connectors.discord.types import ClientConfig
from gatecord.connectors.errors import APIError, TransportError
from gatecord.connectors.ratelimit import HEADER_REMAINING, HEADER_RESET_AFTER

START_MS = 1_700_000_000_000.0


class FakeClock:
    """Epoch-milliseconds clock; sleeping advances it instantly."""

    def __init__(self, now_ms: float = START_MS) -> None:
        self.now_ms = now_ms
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now_ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now_ms += seconds * 1000
        await asyncio.sleep(0)


def make_response(
    status: int = 200,
    body: Any = None,
    headers: dict[str, str] | None = None,
) -> MagicMock:
    """Create mock aiohttp response usable as an async context manager."""
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    if body is None:
        raw = b""
    elif isinstance(body, bytes):
        raw = body
    else:
        raw = orjson.dumps(body)
    response.read = AsyncMock(return_value=raw)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


class RecordingTransport:
    """side_effect for ClientSession.request: records calls and replays outcomes."""

    def __init__(self, clock: FakeClock, outcomes: list[Any]) -> None:
        self.clock = clock
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, method: str, url: str, **kwargs: Any) -> Any:
        self.calls.append({"at": self.clock.now_ms, "method": method, "url": url, **kwargs})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestRequestScheduler:
    """Tests for RequestScheduler."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def config(self) -> ClientConfig:
        return ClientConfig(token="secret-token", auth_scheme="Bot", rest_base_url="http://api.test")

    @pytest.fixture
    def scheduler(self, config: ClientConfig, clock: FakeClock) -> RequestScheduler:
        return RequestScheduler(config, time_fn=clock, sleep_fn=clock.sleep)

    @pytest.mark.asyncio
    async def test_success_returns_json(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        transport = RecordingTransport(clock, [make_response(200, {"id": "1"})])

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            result = await scheduler.submit("/channels/1", method="get")

        assert result == {"id": "1"}
        assert transport.calls[0]["method"] == "GET"
        assert transport.calls[0]["url"] == "http://api.test/channels/1"
        assert scheduler.metrics.requests_succeeded == 1

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_headers_and_body(self, scheduler: RequestScheduler, clock: FakeClock) -> None:
        """Authorization and JSON content type are attached; body is orjson-encoded."""
        transport = RecordingTransport(clock, [make_response(200, {"ok": True})])

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            await scheduler.submit(
                "/channels/1/messages",
                method="POST",
                body={"content": "hi"},
                headers={"X-Audit-Log-Reason": "test"},
            )

        call = transport.calls[0]
        assert call["headers"]["Authorization"] == "Bot secret-token"
        assert call["headers"]["Content-Type"] == "application/json"
        assert call["headers"]["X-Audit-Log-Reason"] == "test"
        assert orjson.loads(call["data"]) == {"content": "hi"}

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_no_content_returns_none(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        transport = RecordingTransport(
            clock,
            [make_response(204), make_response(200, b"")],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            assert await scheduler.submit("/a", method="PUT") is None
            assert await scheduler.submit("/b") is None

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_fifo_single_flight(self, scheduler: RequestScheduler, clock: FakeClock) -> None:
        """Concurrent submissions run one at a time in submission order."""
        in_flight = 0
        max_in_flight = 0

        def slow_response(body: dict[str, int]) -> MagicMock:
            response = make_response(200, body)

            async def read() -> bytes:
                nonlocal in_flight, max_in_flight
                in_flight += 1
                max_in_flight = max(max_in_flight, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return orjson.dumps(body)

            response.read = AsyncMock(side_effect=read)
            return response

        transport = RecordingTransport(clock, [slow_response({"n": i}) for i in range(3)])

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            results = await asyncio.gather(
                scheduler.submit("/first"),
                scheduler.submit("/second"),
                scheduler.submit("/third"),
            )

        assert results == [{"n": 0}, {"n": 1}, {"n": 2}]
        assert [c["url"].rsplit("/", 1)[1] for c in transport.calls] == ["first", "second", "third"]
        assert max_in_flight == 1

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_courtesy_delay_between_requests(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        transport = RecordingTransport(clock, [make_response(200, {}), make_response(200, {})])

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            await asyncio.gather(scheduler.submit("/a"), scheduler.submit("/b"))

        assert transport.calls[1]["at"] - transport.calls[0]["at"] == pytest.approx(100)

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_blocked_bucket_delays_same_route(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        """remaining=0 with reset in 500ms holds the next same-route call >= 500ms."""
        exhausted = {HEADER_REMAINING: "0", HEADER_RESET_AFTER: "0.5"}
        transport = RecordingTransport(
            clock,
            [make_response(200, {"n": 1}, exhausted), make_response(200, {"n": 2})],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            await asyncio.gather(
                scheduler.submit("/channels/1/messages", method="POST", body={}),
                scheduler.submit("/channels/2/messages", method="POST", body={}),
            )

        assert transport.calls[1]["at"] - transport.calls[0]["at"] >= 500
        assert scheduler.metrics.bucket_waits == 1

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_blocked_bucket_does_not_delay_other_routes(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        exhausted = {HEADER_REMAINING: "0", HEADER_RESET_AFTER: "5"}
        transport = RecordingTransport(
            clock,
            [make_response(200, {}, exhausted), make_response(200, {})],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            await asyncio.gather(scheduler.submit("/guilds/1"), scheduler.submit("/channels/1"))

        assert transport.calls[1]["at"] - transport.calls[0]["at"] == pytest.approx(100)
        assert scheduler.metrics.bucket_waits == 0

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_global_rate_limit_delays_unrelated_route(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        """A global 429 holds every queued request until the window clears."""
        transport = RecordingTransport(
            clock,
            [
                make_response(429, {"message": "limited", "retry_after": 2, "global": True}),
                make_response(200, {"n": 1}),
                make_response(200, {"n": 2}),
            ],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            results = await asyncio.gather(
                scheduler.submit("/channels/1/messages", method="POST", body={}),
                scheduler.submit("/guilds/9"),
            )

        limited_at = transport.calls[0]["at"]
        assert results == [{"n": 1}, {"n": 2}]
        assert transport.calls[2]["url"].endswith("/guilds/9")
        assert transport.calls[2]["at"] - limited_at >= 2000
        assert scheduler.global_limit is None
        assert scheduler.metrics.rate_limit_hits == 1
        assert scheduler.metrics.global_rate_limit_hits == 1

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_global_flag_from_header(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        transport = RecordingTransport(
            clock,
            [
                make_response(
                    429,
                    {"retry_after": 0.25},
                    {"Retry-After": "1.5", "X-RateLimit-Global": "true"},
                ),
                make_response(200, {}),
            ],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            await scheduler.submit("/a")

        # Header wins over body
        assert 1.5 in clock.sleeps
        assert scheduler.metrics.global_rate_limit_hits == 1

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_route_429_defaults_to_one_second(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        transport = RecordingTransport(clock, [make_response(429, b"nope"), make_response(200, {})])

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            await scheduler.submit("/a")

        assert clock.sleeps[0] == 1.0
        assert scheduler.metrics.global_rate_limit_hits == 0
        assert scheduler.global_limit is None

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_non_positive_retry_after_still_waits(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        """Zero or negative retry-after values never cause an immediate retry."""
        transport = RecordingTransport(
            clock,
            [
                make_response(429, {"retry_after": 0}, {"Retry-After": "0"}),
                make_response(429, {"retry_after": -3}, {"Retry-After": "-1"}),
                make_response(429, {"retry_after": 0.5}, {"Retry-After": "0"}),
                make_response(200, {}),
            ],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            await scheduler.submit("/a")

        assert clock.sleeps[:3] == [1.0, 1.0, 0.5]
        assert transport.calls[1]["at"] - transport.calls[0]["at"] >= 1000
        assert transport.calls[2]["at"] - transport.calls[1]["at"] >= 1000

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_rate_limits_do_not_consume_attempts(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        """Four 429s in a row still end in success with max_request_attempts=3."""
        limited = [make_response(429, {"retry_after": 0.1}) for _ in range(4)]
        transport = RecordingTransport(clock, [*limited, make_response(200, {"ok": True})])

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            result = await scheduler.submit("/a")

        assert result == {"ok": True}
        assert len(transport.calls) == 5
        assert scheduler.metrics.rate_limit_hits == 4

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_then_reject(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        """Three network failures: retry after 1s and 2s, then the error surfaces."""
        failures = [aiohttp.ClientConnectionError(f"reset {i}") for i in range(3)]
        transport = RecordingTransport(clock, failures)

        with (
            patch.object(aiohttp.ClientSession, "request", side_effect=transport),
            pytest.raises(aiohttp.ClientConnectionError, match="reset 2"),
        ):
            await scheduler.submit("/a")

        assert len(transport.calls) == 3
        assert clock.sleeps[:2] == [1.0, 2.0]
        assert transport.calls[1]["at"] - transport.calls[0]["at"] == pytest.approx(1000)
        assert transport.calls[2]["at"] - transport.calls[1]["at"] == pytest.approx(2000)
        assert scheduler.metrics.transient_retries == 2
        assert scheduler.metrics.requests_failed == 1

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        transport = RecordingTransport(
            clock,
            [TimeoutError(), make_response(200, {"ok": True})],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            assert await scheduler.submit("/a") == {"ok": True}

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_api_error_is_terminal(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        """404 rejects immediately with status, path and server message."""
        transport = RecordingTransport(
            clock,
            [make_response(404, {"message": "Unknown Channel", "code": 10003})],
        )

        with (
            patch.object(aiohttp.ClientSession, "request", side_effect=transport),
            pytest.raises(APIError) as exc_info,
        ):
            await scheduler.submit("/channels/999")

        assert exc_info.value.status == 404
        assert exc_info.value.path == "/channels/999"
        assert exc_info.value.message == "Unknown Channel"
        assert len(transport.calls) == 1
        assert clock.sleeps == [0.1]

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_api_error_without_json_message(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        transport = RecordingTransport(clock, [make_response(500, b"<html>oops</html>")])

        with (
            patch.object(aiohttp.ClientSession, "request", side_effect=transport),
            pytest.raises(APIError, match="Unknown error"),
        ):
            await scheduler.submit("/a")

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_failure_does_not_block_queue(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        transport = RecordingTransport(
            clock,
            [make_response(403, {"message": "Missing Access"}), make_response(200, {"n": 2})],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            results = await asyncio.gather(
                scheduler.submit("/a"),
                scheduler.submit("/b"),
                return_exceptions=True,
            )

        assert isinstance(results[0], APIError)
        assert results[1] == {"n": 2}

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_error_response_updates_bucket(
        self,
        scheduler: RequestScheduler,
        clock: FakeClock,
    ) -> None:
        """Quota headers are honored on error responses too."""
        headers = {HEADER_REMAINING: "0", HEADER_RESET_AFTER: "3"}
        transport = RecordingTransport(clock, [make_response(400, {"message": "bad"}, headers)])

        with (
            patch.object(aiohttp.ClientSession, "request", side_effect=transport),
            pytest.raises(APIError),
        ):
            await scheduler.submit("/channels/5/messages", method="POST", body={})

        assert scheduler.registry.wait_time_ms("POST:/channels/{id}/messages") > 0

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_close_rejects_pending_requests(self, scheduler: RequestScheduler) -> None:
        """close() rejects the in-flight and queued requests with TransportError."""
        entered = asyncio.Event()
        never = asyncio.Event()

        async def hang() -> bytes:
            entered.set()
            await never.wait()
            return b""

        response = make_response(200)
        response.read = AsyncMock(side_effect=hang)

        with patch.object(aiohttp.ClientSession, "request", return_value=response):
            first = asyncio.create_task(scheduler.submit("/a"))
            second = asyncio.create_task(scheduler.submit("/b"))
            await asyncio.wait_for(entered.wait(), timeout=1)

            await scheduler.close()

            with pytest.raises(TransportError, match="closed"):
                await first
            with pytest.raises(TransportError, match="closed"):
                await second

        assert scheduler.queue_depth == 0
        assert scheduler.is_processing is False

        with pytest.raises(TransportError):
            await scheduler.submit("/c")

    @pytest.mark.asyncio
    async def test_status(self, scheduler: RequestScheduler, clock: FakeClock) -> None:
        transport = RecordingTransport(
            clock,
            [make_response(200, {}, {HEADER_REMAINING: "0", HEADER_RESET_AFTER: "10"})],
        )

        with patch.object(aiohttp.ClientSession, "request", side_effect=transport):
            await scheduler.submit("/a")

        status = scheduler.get_status()
        assert status["buckets"] == 1
        assert status["blocked"] == 1
        assert status["global_limited"] is False
        assert status["queue_depth"] == 0

        await scheduler.close()
