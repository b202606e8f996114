"""
Types and configuration for the Discord gateway and REST connector.

Gateway frames are JSON objects {op, d, s, t}:
- op 10 HELLO (in), op 11 HEARTBEAT_ACK (in), op 0 DISPATCH (in)
- op 1 HEARTBEAT (out), op 2 IDENTIFY (out)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Literal

import orjson
from pydantic import BaseModel, ConfigDict, Field

from gatecord.connectors.backoff import BackoffConfig

TOKEN_ENV_VAR = "GATECORD_TOKEN"

# Close code that marks an intentional shutdown; never followed by a reconnect
CLEAN_CLOSE_CODE = 1000
# Close code used when the client abandons a zombied connection
ZOMBIE_CLOSE_CODE = 4000


class GatewayOpcode(IntEnum):
    """Gateway operation codes."""

    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    HELLO = 10
    HEARTBEAT_ACK = 11


class ConnectionState(str, Enum):
    """Gateway connection state."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AWAITING_HELLO = "AWAITING_HELLO"
    IDENTIFYING = "IDENTIFYING"
    READY = "READY"
    CLOSING = "CLOSING"


class GatewayFrame(BaseModel):
    """
    One gateway frame.

    Attributes:
        op: Operation code.
        d: Operation payload.
        s: Sequence number (dispatch frames only).
        t: Dispatch event type (dispatch frames only).
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    op: int
    d: Any = None
    s: int | None = None
    t: str | None = None

    @property
    def opcode(self) -> GatewayOpcode | None:
        """Known opcode, or None for anything this client does not handle."""
        try:
            return GatewayOpcode(self.op)
        except ValueError:
            return None

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json", exclude_none=True))

    @classmethod
    def from_json(cls, data: bytes | str) -> GatewayFrame:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class HelloPayload(BaseModel):
    """Payload of the HELLO handshake challenge."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    heartbeat_interval: int = Field(..., gt=0, description="Heartbeat cadence (ms)")


class ReadyPayload(BaseModel):
    """Payload of the READY dispatch. Unknown fields are kept for listeners."""

    model_config = ConfigDict(frozen=True, extra="allow")

    session_id: str = Field(..., min_length=1)
    v: int | None = None
    user: dict[str, Any] | None = None


class PresenceConfig(BaseModel):
    """Presence descriptor sent with IDENTIFY."""

    model_config = ConfigDict(frozen=True)

    status: Literal["online", "idle", "dnd", "invisible", "offline"] = "online"
    since: int = 0
    activities: list[dict[str, Any]] = Field(default_factory=list)
    afk: bool = False


@dataclass(frozen=True)
class ConnectionSession:
    """
    Gateway session value.

    Owned by GatewayConnection and replaced whole on each transition.
    """

    state: ConnectionState = ConnectionState.DISCONNECTED
    sequence: int | None = None
    session_id: str | None = None
    heartbeat_interval_ms: int | None = None


@dataclass
class ClientConfig:
    """
    Configuration for the gateway connection and the REST scheduler.

    Attributes:
        token: Pre-obtained credential (falls back to GATECORD_TOKEN).
        api_version: API version selecting gateway and REST targets.
        auth_scheme: Authorization prefix ("Bot", "Bearer"); None sends the bare token.
        gateway_url: Override for the gateway URL.
        rest_base_url: Override for the REST base URL.
        presence: Presence sent with IDENTIFY.
        client_name: Browser/device name reported in IDENTIFY properties.
        system_locale: Locale reported in IDENTIFY properties.
        capabilities: Capability flags sent with IDENTIFY.
        detect_zombie_connections: Close the socket when a heartbeat goes unacknowledged.
        reconnect_backoff: Reconnect schedule; max_retries is the attempt ceiling.
        retry_backoff: Transient-failure retry schedule for REST calls.
        max_request_attempts: Attempts per REST call on transient failures.
        inter_request_delay_ms: Courtesy delay between queued REST calls.
        request_timeout_ms: Total REST request timeout; None leaves it to the transport.
    """

    token: str = ""
    api_version: int = 9
    auth_scheme: str | None = None
    gateway_url: str | None = None
    rest_base_url: str | None = None
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    client_name: str = "gatecord"
    system_locale: str = "en-US"
    capabilities: int = 0
    detect_zombie_connections: bool = True
    reconnect_backoff: BackoffConfig = field(
        default_factory=lambda: BackoffConfig(base_delay_ms=1000, max_delay_ms=30000, max_retries=5)
    )
    retry_backoff: BackoffConfig = field(
        default_factory=lambda: BackoffConfig(base_delay_ms=1000, max_delay_ms=30000)
    )
    max_request_attempts: int = 3
    inter_request_delay_ms: int = 100
    request_timeout_ms: int | None = None

    def __post_init__(self) -> None:
        if not self.token:
            self.token = os.environ.get(TOKEN_ENV_VAR, "")
        if not 6 <= self.api_version <= 10:
            raise ValueError(f"api_version must be in [6, 10], got {self.api_version}")
        if self.max_request_attempts < 1:
            raise ValueError(
                f"max_request_attempts must be >= 1, got {self.max_request_attempts}"
            )
        if self.inter_request_delay_ms < 0:
            raise ValueError(
                f"inter_request_delay_ms must be >= 0, got {self.inter_request_delay_ms}"
            )
        if self.request_timeout_ms is not None and self.request_timeout_ms <= 0:
            raise ValueError(f"request_timeout_ms must be > 0, got {self.request_timeout_ms}")

    @property
    def resolved_gateway_url(self) -> str:
        if self.gateway_url:
            return self.gateway_url
        return f"wss://gateway.discord.gg/?v={self.api_version}&encoding=json"

    @property
    def resolved_rest_base_url(self) -> str:
        if self.rest_base_url:
            return self.rest_base_url.rstrip("/")
        return f"https://discord.com/api/v{self.api_version}"

    @property
    def authorization(self) -> str:
        """Value of the Authorization header."""
        if self.auth_scheme:
            return f"{self.auth_scheme} {self.token}"
        return self.token


@dataclass
class GatewayMetrics:
    """
    Metrics for the gateway connection.

    Attributes:
        frames_received: Total frames received.
        dispatches_received: Total DISPATCH frames received.
        heartbeats_sent: Total HEARTBEAT frames sent.
        heartbeat_acks: Total HEARTBEAT_ACK frames received.
        protocol_anomalies: Frames dropped as unrecognized or malformed.
        disconnects: Abnormal (not caller-requested) disconnects.
        reconnect_attempts: Reconnect attempts scheduled.
        zombie_closes: Connections closed for a missing heartbeat ack.
        last_frame_ts: Timestamp of last frame (ms).
        state: Current connection state.
    """

    frames_received: int = 0
    dispatches_received: int = 0
    heartbeats_sent: int = 0
    heartbeat_acks: int = 0
    protocol_anomalies: int = 0
    disconnects: int = 0
    reconnect_attempts: int = 0
    zombie_closes: int = 0
    last_frame_ts: int = 0
    state: ConnectionState = ConnectionState.DISCONNECTED


@dataclass
class SchedulerMetrics:
    """
    Metrics for the REST request scheduler.

    Attributes:
        requests_submitted: Requests accepted into the queue.
        requests_succeeded: Requests resolved with a result.
        requests_failed: Requests rejected with an error.
        rate_limit_hits: 429 responses (route and global).
        global_rate_limit_hits: 429 responses flagged global.
        transient_retries: Retries after network-level failures.
        bucket_waits: Times a request waited on an exhausted route bucket.
        total_wait_ms: Accumulated gate/backoff waiting time.
        current_queue_depth: Requests waiting in the queue.
    """

    requests_submitted: int = 0
    requests_succeeded: int = 0
    requests_failed: int = 0
    rate_limit_hits: int = 0
    global_rate_limit_hits: int = 0
    transient_retries: int = 0
    bucket_waits: int = 0
    total_wait_ms: int = 0
    current_queue_depth: int = 0


@dataclass
class ClientMetrics:
    """Aggregated metrics for a GatewayClient."""

    gateway: GatewayMetrics = field(default_factory=GatewayMetrics)
    scheduler: SchedulerMetrics = field(default_factory=SchedulerMetrics)
    reconnect_attempt: int = 0
    active_buckets: int = 0
    global_rate_limited: bool = False
