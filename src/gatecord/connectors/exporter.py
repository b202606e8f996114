"""
Prometheus metrics exporter for the gateway connection and REST scheduler.

Exports low-cardinality metrics only: no route, channel, guild or user labels.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

from gatecord.connectors.discord.types import ConnectionState

if TYPE_CHECKING:
    from gatecord.connectors.discord.types import ClientMetrics, GatewayMetrics, SchedulerMetrics


# Labels that would cause cardinality explosion
FORBIDDEN_LABELS = frozenset(
    {
        "route",
        "endpoint",
        "path",
        "query",
        "channel_id",
        "guild_id",
        "message_id",
        "user_id",
        "session_id",
        "token",
    }
)

# Numeric encoding of ConnectionState for the state gauge
STATE_VALUES: dict[ConnectionState, int] = {
    ConnectionState.DISCONNECTED: 0,
    ConnectionState.CONNECTING: 1,
    ConnectionState.AWAITING_HELLO: 2,
    ConnectionState.IDENTIFYING: 3,
    ConnectionState.READY: 4,
    ConnectionState.CLOSING: 5,
}

# (metrics dataclass attribute, metric suffix, help)
_REST_COUNTERS: tuple[tuple[str, str, str], ...] = (
    ("requests_submitted", "requests_submitted", "Total requests accepted into the queue"),
    ("requests_succeeded", "requests_succeeded", "Total requests resolved with a result"),
    ("requests_failed", "requests_failed", "Total requests rejected with an error"),
    ("rate_limit_hits", "rate_limit_hits", "Total 429 responses"),
    ("global_rate_limit_hits", "global_rate_limit_hits", "Total 429 responses flagged global"),
    ("transient_retries", "transient_retries", "Total retries after network failures"),
    ("bucket_waits", "bucket_waits", "Total waits on an exhausted route bucket"),
)

_GATEWAY_COUNTERS: tuple[tuple[str, str, str], ...] = (
    ("frames_received", "frames_received", "Total gateway frames received"),
    ("dispatches_received", "dispatches_received", "Total DISPATCH frames received"),
    ("heartbeats_sent", "heartbeats_sent", "Total HEARTBEAT frames sent"),
    ("heartbeat_acks", "heartbeat_acks", "Total HEARTBEAT_ACK frames received"),
    ("protocol_anomalies", "protocol_anomalies", "Total frames dropped as malformed"),
    ("disconnects", "disconnects", "Total abnormal gateway disconnects"),
    ("reconnect_attempts", "reconnect_attempts", "Total reconnect attempts scheduled"),
    ("zombie_closes", "zombie_closes", "Total connections closed for a missing heartbeat ack"),
)


class MetricsExporter:
    """
    Prometheus metrics exporter for a GatewayClient.

    - gatecord_rest_*    : RequestScheduler metrics
    - gatecord_gateway_* : GatewayConnection metrics

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(client.get_metrics())
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            registry: Prometheus CollectorRegistry. A private one is created if None.
        """
        self._registry = registry or CollectorRegistry()

        self._rest_counters = {
            attr: Counter(f"gatecord_rest_{suffix}", help_text, registry=self._registry)
            for attr, suffix, help_text in _REST_COUNTERS
        }
        self._rest_queue_depth = Gauge(
            "gatecord_rest_queue_depth",
            "Requests waiting in the scheduler queue",
            registry=self._registry,
        )
        self._rest_active_buckets = Gauge(
            "gatecord_rest_active_buckets",
            "Route buckets currently tracked",
            registry=self._registry,
        )
        self._rest_global_rate_limited = Gauge(
            "gatecord_rest_global_rate_limited",
            "1 while a global rate limit window is active",
            registry=self._registry,
        )
        self._rest_wait_ms = Counter(
            "gatecord_rest_wait_ms",
            "Total milliseconds spent waiting on rate limits and backoff",
            registry=self._registry,
        )

        self._gateway_counters = {
            attr: Counter(f"gatecord_gateway_{suffix}", help_text, registry=self._registry)
            for attr, suffix, help_text in _GATEWAY_COUNTERS
        }
        self._gateway_state = Gauge(
            "gatecord_gateway_state",
            "Connection state (0=DISCONNECTED .. 4=READY, 5=CLOSING)",
            registry=self._registry,
        )
        self._gateway_reconnect_attempt = Gauge(
            "gatecord_gateway_reconnect_attempt",
            "Current position in the reconnect attempt budget",
            registry=self._registry,
        )

        # Last seen values, counters are monotonic
        self._last_seen: dict[str, int] = {}

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def update(self, metrics: ClientMetrics) -> None:
        """
        Sync a ClientMetrics snapshot to Prometheus.

        Call periodically (every scrape or on a timer).
        """
        self._update_rest_metrics(metrics.scheduler)
        self._rest_active_buckets.set(metrics.active_buckets)
        self._rest_global_rate_limited.set(1 if metrics.global_rate_limited else 0)

        self._update_gateway_metrics(metrics.gateway)
        self._gateway_reconnect_attempt.set(metrics.reconnect_attempt)

    def _inc_by_delta(self, key: str, counter: Counter, current: int) -> None:
        delta = current - self._last_seen.get(key, 0)
        if delta > 0:
            counter.inc(delta)
        self._last_seen[key] = current

    def _update_rest_metrics(self, scheduler: SchedulerMetrics) -> None:
        self._rest_queue_depth.set(scheduler.current_queue_depth)
        for attr, counter in self._rest_counters.items():
            self._inc_by_delta(f"rest.{attr}", counter, getattr(scheduler, attr))
        self._inc_by_delta("rest.total_wait_ms", self._rest_wait_ms, scheduler.total_wait_ms)

    def _update_gateway_metrics(self, gateway: GatewayMetrics) -> None:
        self._gateway_state.set(STATE_VALUES[gateway.state])
        for attr, counter in self._gateway_counters.items():
            self._inc_by_delta(f"gateway.{attr}", counter, getattr(gateway, attr))

    def reset_counter_tracking(self) -> None:
        """
        Reset internal counter tracking (e.g. after a new client replaces the old one).

        Does NOT reset the Prometheus counters themselves.
        """
        self._last_seen.clear()


# Counters are exported with a _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {f"gatecord_rest_{suffix}_total" for _, suffix, _ in _REST_COUNTERS}
    | {f"gatecord_gateway_{suffix}_total" for _, suffix, _ in _GATEWAY_COUNTERS}
    | {
        "gatecord_rest_wait_ms_total",
        "gatecord_rest_queue_depth",
        "gatecord_rest_active_buckets",
        "gatecord_rest_global_rate_limited",
        "gatecord_gateway_state",
        "gatecord_gateway_reconnect_attempt",
    }
)
