"""
Gateway connection: handshake, heartbeat and reconnect state machine.

DISCONNECTED → CONNECTING → AWAITING_HELLO → IDENTIFYING → READY
- HELLO starts the heartbeat loop and sends exactly one IDENTIFY
- READY captures the session id and resets the reconnect budget
- An abnormal close reconnects with exponential backoff until the budget runs out
- disconnect() closes with code 1000 and never reconnects

Network failures are published on the EventBus, never raised to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

import aiohttp
import orjson

from gatecord.connectors.backoff import ReconnectPolicy
from gatecord.connectors.discord.events import (
    Connected,
    Disconnected,
    Dispatch,
    EntityEvent,
    Error,
    EventBus,
    Ready,
    ReconnectExhaustedEvent,
)
from gatecord.connectors.discord.types import (
    CLEAN_CLOSE_CODE,
    ZOMBIE_CLOSE_CODE,
    ClientConfig,
    ConnectionSession,
    ConnectionState,
    GatewayFrame,
    GatewayMetrics,
    GatewayOpcode,
    HelloPayload,
    ReadyPayload,
)
from gatecord.connectors.errors import ProtocolAnomaly, ReconnectExhausted, TransportError

logger = logging.getLogger(__name__)

READY_EVENT = "READY"

# Dispatches published as EntityEvent instead of a raw Dispatch
ENTITY_DISPATCH_TYPES: frozenset[str] = frozenset(
    {
        "MESSAGE_CREATE",
        "MESSAGE_UPDATE",
        "GUILD_CREATE",
        "GUILD_UPDATE",
        "CHANNEL_CREATE",
        "CHANNEL_UPDATE",
    }
)

CONNECT_ERRORS: tuple[type[BaseException], ...] = (aiohttp.ClientError, OSError, TimeoutError)
SEND_ERRORS: tuple[type[BaseException], ...] = (aiohttp.ClientError, ConnectionError, RuntimeError)

SleepFn = Callable[[float], Awaitable[None]]


class GatewayConnection:
    """
    A single persistent gateway connection.

    Responsible for:
    - Connection lifecycle and state transitions
    - Handshake (HELLO → IDENTIFY → READY)
    - Heartbeat loop with optional zombie detection
    - Reconnection with exponential backoff
    - Demultiplexing inbound frames onto the EventBus
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        bus: EventBus | None = None,
        *,
        reconnect_policy: ReconnectPolicy | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        """
        Initialize the gateway connection.

        Args:
            config: Client configuration.
            bus: EventBus to publish on; a private one is created if omitted.
            reconnect_policy: Reconnect budget/schedule (defaults from config).
            time_fn: Epoch-milliseconds clock for deterministic testing.
            sleep_fn: Sleep primitive (seconds) for heartbeat and reconnect waits.
        """
        self._config = config or ClientConfig()
        self._bus = bus or EventBus()
        self._policy = reconnect_policy or ReconnectPolicy(
            config=self._config.reconnect_backoff,
            _time_fn=time_fn,
        )
        self._time_fn = time_fn
        self._sleep_fn: SleepFn = sleep_fn or asyncio.sleep

        self._session = ConnectionSession()
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._http: aiohttp.ClientSession | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

        self._closing_requested = False
        self._local_close_code: int | None = None
        self._heartbeat_acked = True
        self._last_heartbeat_ms = 0
        self._last_ack_ms = 0

        self.metrics = GatewayMetrics()

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._session.state

    @property
    def session(self) -> ConnectionSession:
        """Get the current session value."""
        return self._session

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def reconnect_policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def _transition(self, state: ConnectionState, **changes: Any) -> None:
        """Replace the session value with a new state (and optional field changes)."""
        old_state = self._session.state
        self._session = replace(self._session, state=state, **changes)
        self.metrics.state = state
        if old_state != state:
            logger.debug(
                "Gateway state changed",
                extra={"old_state": old_state.value, "new_state": state.value},
            )

    def _get_http_session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return self._http

    async def connect(self) -> None:
        """
        Open the gateway socket and start receiving.

        An existing socket is closed first. A failed open is treated as an abnormal
        close: an Error event is published and the reconnect policy takes over.
        A caller-initiated connect starts with a fresh reconnect budget.
        """
        if self._reconnect_task is not asyncio.current_task():
            await _cancel_task(self._reconnect_task)
            self._reconnect_task = None
            self._policy.reset()
        await self._teardown()

        self._closing_requested = False
        self._local_close_code = None
        self._session = ConnectionSession()
        self._transition(ConnectionState.CONNECTING)

        url = self._config.resolved_gateway_url
        logger.info("Connecting to gateway", extra={"url": url, "attempt": self._policy.attempt})

        try:
            ws = await self._get_http_session().ws_connect(url, autoping=True)
        except CONNECT_ERRORS as e:
            if self._closing_requested:
                return
            logger.error("Failed to connect", extra={"error": str(e)})
            await self._bus.publish(Error(TransportError(f"Gateway connection failed: {e}")))
            await self._handle_close(None, code=None, reason=str(e))
            return

        if self._closing_requested:
            # disconnect() ran while the handshake was in flight
            with contextlib.suppress(*SEND_ERRORS):
                await ws.close()
            return

        self._ws = ws
        self._heartbeat_acked = True
        self._transition(ConnectionState.AWAITING_HELLO)
        logger.info("Gateway socket open")
        await self._bus.publish(Connected())

        # A Connected handler may already have torn the socket down
        if self._ws is ws:
            self._receive_task = asyncio.create_task(self._receive_loop(ws))

    async def disconnect(self, code: int = CLEAN_CLOSE_CODE, reason: str = "Client disconnect") -> None:
        """Close the connection on purpose. Cancels any pending reconnect."""
        self._closing_requested = True

        if self._reconnect_task is not asyncio.current_task():
            await _cancel_task(self._reconnect_task)
            self._reconnect_task = None

        ws = self._ws
        if ws is None and self.state == ConnectionState.DISCONNECTED:
            await self._close_http()
            return

        self._transition(ConnectionState.CLOSING)
        await self._teardown(code=code, reason=reason)
        self._transition(ConnectionState.DISCONNECTED)

        await self._bus.publish(Disconnected(code, reason))
        await self._close_http()
        logger.info("Gateway disconnected", extra={"code": code})

    async def _teardown(self, code: int = CLEAN_CLOSE_CODE, reason: str = "") -> None:
        """Stop background tasks and close the current socket without reconnecting."""
        await _cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        await _cancel_task(self._receive_task)
        self._receive_task = None

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            with contextlib.suppress(*SEND_ERRORS):
                await ws.close(code=code, message=reason.encode())

    async def _close_http(self) -> None:
        if self._http and not self._http.closed:
            await self._http.close()
        self._http = None

    async def send(self, payload: dict[str, Any] | GatewayFrame) -> bool:
        """
        Send a frame if the socket is open.

        Returns:
            True if the frame was written, False if it was dropped.
        """
        ws = self._ws
        if ws is None or ws.closed:
            logger.debug("Socket not open, dropping outbound frame")
            return False

        data = payload.to_json() if isinstance(payload, GatewayFrame) else orjson.dumps(payload)
        try:
            await ws.send_str(data.decode())
        except SEND_ERRORS as e:
            logger.warning("Failed to send frame", extra={"error": str(e)})
            return False
        return True

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Main loop for receiving gateway frames."""
        code: int | None = None
        reason = ""

        try:
            while True:
                msg = await ws.receive()

                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_text(msg.data)

                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._record_anomaly(ProtocolAnomaly("Binary frame not supported"))

                elif msg.type == aiohttp.WSMsgType.CLOSE:
                    code = msg.data
                    reason = msg.extra or ""
                    break

                elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    break

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ws.exception()
                    logger.error("WebSocket error", extra={"error": str(error)})
                    await self._bus.publish(Error(TransportError(f"WebSocket error: {error}")))
                    break

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error in receive loop", extra={"error": str(e)})
            await self._bus.publish(Error(TransportError(f"Receive loop failed: {e}")))

        if code is None:
            code = self._local_close_code or ws.close_code
        if not ws.closed:
            with contextlib.suppress(*SEND_ERRORS):
                await ws.close()

        await self._handle_close(ws, code=code, reason=reason)

    async def _handle_close(
        self,
        ws: aiohttp.ClientWebSocketResponse | None,
        *,
        code: int | None,
        reason: str,
    ) -> None:
        """React to a socket closing (or failing to open)."""
        if ws is not None and ws is not self._ws:
            # Superseded by disconnect() or a newer connect()
            return

        self._ws = None
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        if heartbeat is not None and not heartbeat.done():
            heartbeat.cancel()

        self._transition(ConnectionState.DISCONNECTED)
        logger.info("Gateway closed", extra={"code": code, "reason": reason})
        await self._bus.publish(Disconnected(code, reason))

        if self._closing_requested or code == CLEAN_CLOSE_CODE:
            return

        self.metrics.disconnects += 1
        await self._schedule_reconnect()

    async def _schedule_reconnect(self) -> None:
        """Start a delayed reconnect, or give up once the budget is spent."""
        if self._policy.exhausted:
            attempts = self._policy.attempt
            logger.error("Max reconnect attempts reached", extra={"attempts": attempts})
            await self._bus.publish(
                Error(ReconnectExhausted("Max reconnect attempts reached", attempts=attempts))
            )
            await self._bus.publish(ReconnectExhaustedEvent(attempts=attempts))
            return

        delay_ms = self._policy.next_delay_ms()
        self.metrics.reconnect_attempts += 1
        logger.info(
            "Reconnecting with backoff",
            extra={"delay_ms": delay_ms, "attempt": self._policy.attempt},
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay_ms))

    async def _reconnect_after(self, delay_ms: int) -> None:
        await self._sleep_fn(delay_ms / 1000)
        await self.connect()

    async def _handle_text(self, data: str) -> None:
        """Parse one text frame and route it by opcode."""
        try:
            frame = GatewayFrame.from_json(data)
        except ValueError as e:
            self._record_anomaly(ProtocolAnomaly(f"Undecodable frame: {e}"))
            return

        self.metrics.frames_received += 1
        self.metrics.last_frame_ts = self._now_ms()

        if frame.s is not None:
            self._transition(self.state, sequence=frame.s)

        opcode = frame.opcode
        if opcode == GatewayOpcode.HELLO:
            await self._handle_hello(frame)
        elif opcode == GatewayOpcode.HEARTBEAT_ACK:
            self._heartbeat_acked = True
            self._last_ack_ms = self._now_ms()
            self.metrics.heartbeat_acks += 1
        elif opcode == GatewayOpcode.DISPATCH:
            await self._handle_dispatch(frame)
        else:
            self._record_anomaly(ProtocolAnomaly("Unhandled opcode", op=frame.op))

    async def _handle_hello(self, frame: GatewayFrame) -> None:
        if self.state != ConnectionState.AWAITING_HELLO:
            self._record_anomaly(ProtocolAnomaly("Unexpected HELLO", op=frame.op))
            return
        try:
            hello = HelloPayload.model_validate(frame.d)
        except ValueError as e:
            self._record_anomaly(ProtocolAnomaly(f"Malformed HELLO: {e}", op=frame.op))
            return

        self._transition(
            ConnectionState.IDENTIFYING,
            heartbeat_interval_ms=hello.heartbeat_interval,
        )
        self._start_heartbeat(hello.heartbeat_interval)
        await self._send_identify()

    async def _handle_dispatch(self, frame: GatewayFrame) -> None:
        self.metrics.dispatches_received += 1

        if frame.t == READY_EVENT:
            try:
                ready = ReadyPayload.model_validate(frame.d)
            except ValueError as e:
                self._record_anomaly(ProtocolAnomaly(f"Malformed READY: {e}", op=frame.op))
                return
            self._transition(ConnectionState.READY, session_id=ready.session_id)
            self._policy.reset()
            logger.info("Gateway session ready", extra={"sequence": self._session.sequence})
            await self._bus.publish(Ready(ready))

        elif frame.t in ENTITY_DISPATCH_TYPES and isinstance(frame.d, dict):
            entity, _, action = frame.t.rpartition("_")
            await self._bus.publish(
                EntityEvent(
                    event_type=frame.t,
                    entity=entity.lower(),
                    action=action.lower(),
                    data=frame.d,
                )
            )

        else:
            await self._bus.publish(Dispatch(frame))

    def _record_anomaly(self, anomaly: ProtocolAnomaly) -> None:
        self.metrics.protocol_anomalies += 1
        logger.warning(
            "Dropping gateway frame",
            extra={"reason": str(anomaly), "op": anomaly.op},
        )

    def _build_identify(self) -> dict[str, Any]:
        return {
            "op": int(GatewayOpcode.IDENTIFY),
            "d": {
                "token": self._config.token,
                "properties": {
                    "os": sys.platform,
                    "browser": self._config.client_name,
                    "device": self._config.client_name,
                    "system_locale": self._config.system_locale,
                },
                "compress": False,
                "presence": self._config.presence.model_dump(mode="json"),
                "capabilities": self._config.capabilities,
                "client_state": {"guild_versions": {}},
            },
        }

    async def _send_identify(self) -> None:
        logger.info("Sending IDENTIFY")
        await self.send(self._build_identify())

    def _start_heartbeat(self, interval_ms: int) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_acked = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(interval_ms))

    async def _heartbeat_loop(self, interval_ms: int) -> None:
        """Send a HEARTBEAT carrying the last sequence once per interval."""
        interval = interval_ms / 1000

        while True:
            await self._sleep_fn(interval)

            ws = self._ws
            if ws is None or ws.closed:
                break

            if self._config.detect_zombie_connections and not self._heartbeat_acked:
                self.metrics.zombie_closes += 1
                logger.warning(
                    "Heartbeat not acknowledged, closing zombie connection",
                    extra={"last_heartbeat_ms": self._last_heartbeat_ms},
                )
                self._local_close_code = ZOMBIE_CLOSE_CODE
                # Shielded: closing wakes the receive loop, which cancels this task
                with contextlib.suppress(*SEND_ERRORS):
                    await asyncio.shield(
                        ws.close(code=ZOMBIE_CLOSE_CODE, message=b"Heartbeat not acknowledged")
                    )
                break

            self._heartbeat_acked = False
            self._last_heartbeat_ms = self._now_ms()
            if await self.send({"op": int(GatewayOpcode.HEARTBEAT), "d": self._session.sequence}):
                self.metrics.heartbeats_sent += 1

    def get_metrics(self) -> GatewayMetrics:
        """Get current gateway metrics."""
        self.metrics.state = self.state
        return self.metrics

    def get_status(self) -> dict[str, Any]:
        """Get current connection status for observability."""
        return {
            "state": self.state.value,
            "sequence": self._session.sequence,
            "heartbeat_interval_ms": self._session.heartbeat_interval_ms,
            "last_ack_ms": self._last_ack_ms,
            "reconnect_pending": self.reconnect_pending,
            **self._policy.get_status(),
        }


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it, unless it is the caller itself."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
