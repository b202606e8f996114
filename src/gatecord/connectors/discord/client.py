"""
Client facade: one configuration, one EventBus, one gateway connection and one REST
client sharing a request scheduler.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from gatecord.connectors.discord.events import EventBus, Ready
from gatecord.connectors.discord.gateway import GatewayConnection
from gatecord.connectors.discord.rest_client import DiscordRestClient
from gatecord.connectors.discord.scheduler import RequestScheduler
from gatecord.connectors.discord.types import (
    CLEAN_CLOSE_CODE,
    ClientConfig,
    ClientMetrics,
    GatewayFrame,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from gatecord.connectors.discord.events import E, Handler
    from gatecord.connectors.discord.types import ConnectionState

logger = logging.getLogger(__name__)


class GatewayClient:
    """
    Entry point for applications.

    Usage:
        client = GatewayClient(ClientConfig(auth_scheme="Bot"))

        @client.on(EntityEvent)
        async def on_entity(event: EntityEvent) -> None:
            ...

        await client.login(token)
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        bus: EventBus | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._bus = bus or EventBus()
        self._scheduler = RequestScheduler(self._config, time_fn=time_fn, sleep_fn=sleep_fn)
        self._rest = DiscordRestClient(self._config, self._scheduler, time_fn=time_fn)
        self._gateway = GatewayConnection(
            self._config,
            self._bus,
            time_fn=time_fn,
            sleep_fn=sleep_fn,
        )
        self._session_id: str | None = None
        self._bus.subscribe(Ready, self._on_ready)

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def gateway(self) -> GatewayConnection:
        return self._gateway

    @property
    def rest(self) -> DiscordRestClient:
        return self._rest

    @property
    def state(self) -> ConnectionState:
        return self._gateway.state

    @property
    def session_id(self) -> str | None:
        """Session ID from the most recent READY, or None before the first one."""
        return self._session_id

    def _on_ready(self, event: Ready) -> None:
        self._session_id = event.payload.session_id

    async def login(self, token: str) -> None:
        """Store the credential and open the gateway connection."""
        self._config.token = token
        await self.connect()

    async def connect(self) -> None:
        """
        Open the gateway connection.

        Raises:
            ValueError: If no token has been configured.
        """
        if not self._config.token:
            raise ValueError("Token is required. Call login() first.")
        await self._gateway.connect()

    async def disconnect(self, reason: str = "Client disconnect") -> None:
        await self._gateway.disconnect(CLEAN_CLOSE_CODE, reason)

    async def close(self) -> None:
        """Disconnect the gateway and shut down the REST scheduler."""
        await self.disconnect()
        await self._rest.close()
        logger.info("Client closed")

    async def send(self, payload: dict[str, Any] | GatewayFrame) -> bool:
        """Send a raw gateway frame. Returns False if the socket is not open."""
        return await self._gateway.send(payload)

    def on(self, event_type: type[E]) -> Callable[[Handler[E]], Handler[E]]:
        """Decorator registering a handler for an event class."""
        return self._bus.on(event_type)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Callable[[], None]:
        return self._bus.subscribe(event_type, handler)

    async def send_message(self, channel_id: str | int, payload: str | dict[str, Any]) -> Any:
        return await self._rest.send_message(channel_id, payload)

    async def click_button(
        self,
        channel_id: str | int,
        message_id: str | int,
        application_id: str | int,
        guild_id: str | int | None,
        custom_id: str,
        message_flags: int = 0,
    ) -> Any:
        """
        Press a button using the current gateway session.

        Raises:
            RuntimeError: If no session is ready yet.
        """
        if self._session_id is None:
            raise RuntimeError("No gateway session; wait for READY before interacting")
        return await self._rest.click_button(
            channel_id,
            message_id,
            application_id,
            guild_id,
            custom_id,
            self._session_id,
            message_flags,
        )

    def get_metrics(self) -> ClientMetrics:
        """
        Get a snapshot of gateway and scheduler metrics.

        Returns:
            ClientMetrics with both subsystems' counters.
        """
        registry_status = self._scheduler.registry.get_status()
        scheduler_status = self._scheduler.get_status()
        return ClientMetrics(
            gateway=self._gateway.get_metrics(),
            scheduler=self._scheduler.metrics,
            reconnect_attempt=self._gateway.reconnect_policy.attempt,
            active_buckets=registry_status["buckets"],
            global_rate_limited=bool(scheduler_status["global_limited"]),
        )
