"""
Per-route rate-limit bucket registry.

Quota headers on each REST response are the only source of truth: a response that
carries them overwrites the route's bucket whole. A bucket is blocking while
remaining <= 0 and its reset time is still ahead. Buckets past their reset time are
garbage and get pruned; the next response re-creates them.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

HEADER_REMAINING = "X-RateLimit-Remaining"
HEADER_RESET = "X-RateLimit-Reset"
HEADER_RESET_AFTER = "X-RateLimit-Reset-After"
HEADER_LIMIT = "X-RateLimit-Limit"
HEADER_GLOBAL = "X-RateLimit-Global"
HEADER_RETRY_AFTER = "Retry-After"

ID_PLACEHOLDER = "{id}"

# Whole path segments made only of digits (snowflake IDs)
_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")


def route_key(method: str, endpoint: str) -> str:
    """
    Build the bucket key for a request.

    Query strings are dropped and every purely numeric path segment collapses to a
    placeholder, so calls differing only in an ID share one bucket.

    Examples:
        >>> route_key("post", "/channels/123/messages")
        'POST:/channels/{id}/messages'
        >>> route_key("GET", "/channels/1/messages?limit=50")
        'GET:/channels/{id}/messages'
    """
    path = urlsplit(endpoint).path or "/"
    normalized = _NUMERIC_SEGMENT.sub("/" + ID_PLACEHOLDER, path)
    return f"{method.upper()}:{normalized}"


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


@dataclass
class RateLimitBucket:
    """
    Quota record for one normalized route.

    Attributes:
        route_key: METHOD:normalized-path.
        remaining: Calls left in the current window (server value, may be <= 0).
        reset_at_ms: Epoch milliseconds when the window resets.
        limit: Window ceiling, if the server reported it.
        last_updated_ms: When the bucket was last overwritten.
    """

    route_key: str
    remaining: int
    reset_at_ms: float
    limit: int | None = None
    last_updated_ms: float = 0.0

    def is_blocked(self, now_ms: float) -> bool:
        return self.remaining <= 0 and now_ms < self.reset_at_ms

    def wait_time_ms(self, now_ms: float) -> float:
        if not self.is_blocked(now_ms):
            return 0.0
        return self.reset_at_ms - now_ms

    def is_expired(self, now_ms: float) -> bool:
        return now_ms > self.reset_at_ms


@dataclass
class GlobalRateLimit:
    """Account-wide limit window set by a global 429."""

    reset_at_ms: float

    def is_active(self, now_ms: float) -> bool:
        return now_ms < self.reset_at_ms

    def wait_time_ms(self, now_ms: float) -> float:
        return max(0.0, self.reset_at_ms - now_ms)


@dataclass
class BucketRegistry:
    """
    Route key → RateLimitBucket map, updated from response headers.

    Not thread-safe; owned by one RequestScheduler on one event loop.
    """

    _buckets: dict[str, RateLimitBucket] = field(default_factory=dict)
    _time_fn: Callable[[], float] | None = field(default=None)

    def _now_ms(self) -> float:
        if self._time_fn is not None:
            return self._time_fn()
        return time.time() * 1000

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: object) -> bool:
        return key in self._buckets

    def get(self, key: str) -> RateLimitBucket | None:
        return self._buckets.get(key)

    def set(self, bucket: RateLimitBucket) -> None:
        self._buckets[bucket.route_key] = bucket

    def wait_time_ms(self, key: str) -> float:
        """Milliseconds until the route may be called (0 if not blocked)."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return 0.0
        return bucket.wait_time_ms(self._now_ms())

    def update_from_headers(
        self,
        key: str,
        headers: Mapping[str, str],
    ) -> RateLimitBucket | None:
        """
        Overwrite the bucket for a route from response headers.

        Requires a remaining count and either an absolute reset timestamp (epoch
        seconds) or a relative reset-after (seconds). Prunes expired buckets after
        every successful update.

        Returns:
            The new bucket, or None if the headers carried no usable quota data.
        """
        remaining = _parse_int(headers.get(HEADER_REMAINING))
        reset_s = _parse_float(headers.get(HEADER_RESET))
        now_ms = self._now_ms()

        if reset_s is not None:
            reset_at_ms = reset_s * 1000
        else:
            reset_after_s = _parse_float(headers.get(HEADER_RESET_AFTER))
            if reset_after_s is None:
                return None
            reset_at_ms = now_ms + reset_after_s * 1000

        if remaining is None:
            return None

        bucket = RateLimitBucket(
            route_key=key,
            remaining=remaining,
            reset_at_ms=reset_at_ms,
            limit=_parse_int(headers.get(HEADER_LIMIT)),
            last_updated_ms=now_ms,
        )
        self._buckets[key] = bucket
        self.prune(now_ms)
        return bucket

    def prune(self, now_ms: float | None = None) -> int:
        """
        Drop buckets whose reset time has passed.

        Returns:
            Number of buckets removed.
        """
        if now_ms is None:
            now_ms = self._now_ms()
        expired = [k for k, b in self._buckets.items() if b.is_expired(now_ms)]
        for key in expired:
            del self._buckets[key]
        return len(expired)

    def clear(self) -> None:
        self._buckets.clear()

    def get_status(self) -> dict[str, int]:
        """Get registry status for observability."""
        now_ms = self._now_ms()
        return {
            "buckets": len(self._buckets),
            "blocked": sum(1 for b in self._buckets.values() if b.is_blocked(now_ms)),
        }
