"""
Discord-style gateway and REST connector.

- One persistent gateway connection: HELLO → IDENTIFY → READY, heartbeats
- Exponential backoff on abnormal closes, attempt budget reset on READY
- REST calls serialized through one scheduler honoring route and global limits
"""

from gatecord.connectors.discord.client import GatewayClient
from gatecord.connectors.discord.events import (
    Connected,
    Disconnected,
    Dispatch,
    EntityEvent,
    Error,
    EventBus,
    GatewayEvent,
    Ready,
    ReconnectExhaustedEvent,
)
from gatecord.connectors.discord.gateway import GatewayConnection
from gatecord.connectors.discord.rest_client import DiscordRestClient
from gatecord.connectors.discord.scheduler import RequestScheduler
from gatecord.connectors.discord.types import (
    ClientConfig,
    ClientMetrics,
    ConnectionSession,
    ConnectionState,
    GatewayFrame,
    GatewayMetrics,
    GatewayOpcode,
    HelloPayload,
    PresenceConfig,
    ReadyPayload,
    SchedulerMetrics,
)

__all__ = [
    "ClientConfig",
    "ClientMetrics",
    "Connected",
    "ConnectionSession",
    "ConnectionState",
    "Disconnected",
    "DiscordRestClient",
    "Dispatch",
    "EntityEvent",
    "Error",
    "EventBus",
    "GatewayClient",
    "GatewayConnection",
    "GatewayEvent",
    "GatewayFrame",
    "GatewayMetrics",
    "GatewayOpcode",
    "HelloPayload",
    "PresenceConfig",
    "Ready",
    "ReadyPayload",
    "ReconnectExhaustedEvent",
    "RequestScheduler",
    "SchedulerMetrics",
]
