"""
Typed publish/subscribe channel for gateway lifecycle and dispatch events.

Handlers are registered per event class and awaited in registration order, so
listeners see events in the order frames arrived. A failing handler is logged and
does not stop delivery to the others.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from gatecord.connectors.discord.types import GatewayFrame, ReadyPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayEvent:
    """Base class for everything published on the bus."""


@dataclass(frozen=True)
class Connected(GatewayEvent):
    """Socket opened; the handshake has not started yet."""


@dataclass(frozen=True)
class Disconnected(GatewayEvent):
    """Socket closed, by either side."""

    code: int | None
    reason: str = ""


@dataclass(frozen=True)
class Ready(GatewayEvent):
    """Handshake complete."""

    payload: ReadyPayload


@dataclass(frozen=True)
class Dispatch(GatewayEvent):
    """Dispatch with no dedicated event, forwarded raw."""

    frame: GatewayFrame


@dataclass(frozen=True)
class EntityEvent(GatewayEvent):
    """
    Create/update dispatch for a higher-level entity.

    Attributes:
        event_type: Raw dispatch tag, e.g. "MESSAGE_CREATE".
        entity: Lowercase entity name, e.g. "message".
        action: "create" or "update".
        data: Raw dispatch payload.
    """

    event_type: str
    entity: str
    action: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Error(GatewayEvent):
    """Connection-level failure."""

    error: Exception


@dataclass(frozen=True)
class ReconnectExhaustedEvent(GatewayEvent):
    """Reconnect budget used up; no further automatic attempts."""

    attempts: int


E = TypeVar("E", bound=GatewayEvent)
Handler = Callable[[E], Awaitable[None] | None]


class EventBus:
    """
    Registry of typed handlers.

    Usage:
        bus = EventBus()
        bus.subscribe(Ready, on_ready)
        await bus.publish(Ready(payload))
    """

    def __init__(self) -> None:
        self._handlers: dict[type[GatewayEvent], list[Handler[Any]]] = {}
        self.published: int = 0

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Callable[[], None]:
        """
        Register a handler for one event class (subclasses included).

        Returns:
            Callable that removes the handler.
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def on(self, event_type: type[E]) -> Callable[[Handler[E]], Handler[E]]:
        """Decorator form of subscribe()."""

        def decorator(handler: Handler[E]) -> Handler[E]:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def handler_count(self, event_type: type[GatewayEvent]) -> int:
        return len(self._handlers.get(event_type, []))

    def clear(self) -> None:
        self._handlers.clear()

    async def publish(self, event: GatewayEvent) -> None:
        """Deliver an event to every matching handler, in registration order."""
        self.published += 1
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(
                        "Event handler failed",
                        extra={"event": type(event).__name__},
                    )
