"""
Error taxonomy for the gateway connection and the REST scheduler.

Connection-level failures are published as events (many listeners, no single caller).
Request-level failures are raised to the one caller that submitted the request.
"""

from __future__ import annotations


class TransportError(Exception):
    """Socket or network failure on the gateway, or a request cut off by shutdown."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class ProtocolAnomaly(Exception):
    """Unrecognized or malformed gateway frame. Logged and dropped, never fatal."""

    def __init__(self, message: str, op: int | None = None) -> None:
        super().__init__(message)
        self.op = op


class RateLimitWait(Exception):
    """Raised on a 429 response. Internal to the scheduler, never surfaced to callers."""

    def __init__(
        self,
        message: str,
        retry_after_ms: int,
        is_global: bool = False,
        route_key: str | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms
        self.is_global = is_global
        self.route_key = route_key


class APIError(Exception):
    """Non-success, non-rate-limited REST response. Terminal for that request."""

    def __init__(self, message: str, status: int, path: str) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.path = path

    def __str__(self) -> str:
        return f"{self.message} (status={self.status}, path={self.path})"


class ReconnectExhausted(Exception):
    """Reconnect attempt budget used up; the caller must call connect() again."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts
