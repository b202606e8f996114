"""Connectors for the gateway and REST API: backoff, rate limits, errors, metrics."""

from gatecord.connectors.backoff import (
    BackoffConfig,
    ReconnectPolicy,
    compute_backoff_delay,
)
from gatecord.connectors.errors import (
    APIError,
    ProtocolAnomaly,
    RateLimitWait,
    ReconnectExhausted,
    TransportError,
)
from gatecord.connectors.ratelimit import (
    BucketRegistry,
    GlobalRateLimit,
    RateLimitBucket,
    route_key,
)

__all__ = [
    "APIError",
    "BackoffConfig",
    "BucketRegistry",
    "GlobalRateLimit",
    "ProtocolAnomaly",
    "RateLimitBucket",
    "RateLimitWait",
    "ReconnectExhausted",
    "ReconnectPolicy",
    "TransportError",
    "compute_backoff_delay",
    "route_key",
]
