"""
REST endpoint helpers layered on the RequestScheduler.

Every call goes through the scheduler, so helpers inherit its ordering, rate-limit
gating and retry policy. Helpers return the decoded JSON payload unchanged.
"""

from __future__ import annotations

import logging
import random
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlencode

from gatecord.connectors.discord.scheduler import RequestScheduler

if TYPE_CHECKING:
    from collections.abc import Callable

    from gatecord.connectors.discord.types import ClientConfig

logger = logging.getLogger(__name__)

# First millisecond of 2015, the epoch snowflake IDs count from
SNOWFLAKE_EPOCH_MS = 1_420_070_400_000
NONCE_RANDOM_BITS = 22

INTERACTION_TYPE_MESSAGE_COMPONENT = 3
COMPONENT_TYPE_BUTTON = 2


def generate_nonce(now_ms: int | None = None, rng: random.Random | None = None) -> str:
    """
    Build a snowflake-style nonce from a timestamp.

    The low 22 bits are random so nonces minted in the same millisecond differ.

    Args:
        now_ms: Epoch milliseconds (defaults to the wall clock).
        rng: Optional seeded Random instance for deterministic nonces.

    Returns:
        Decimal string of the timestamp in snowflake position plus the random bits.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if rng is not None:
        low_bits = rng.getrandbits(NONCE_RANDOM_BITS)
    else:
        low_bits = random.getrandbits(NONCE_RANDOM_BITS)
    return str(((now_ms - SNOWFLAKE_EPOCH_MS) << NONCE_RANDOM_BITS) | low_bits)


class DiscordRestClient:
    """
    Async REST client for channel, guild and message operations.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        scheduler: RequestScheduler | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the REST client.

        Args:
            config: Client configuration (used to build a scheduler if none is given).
            scheduler: Shared RequestScheduler.
            time_fn: Epoch-milliseconds clock used for interaction nonces.
        """
        self._scheduler = scheduler or RequestScheduler(config)
        self._time_fn = time_fn

    @property
    def scheduler(self) -> RequestScheduler:
        return self._scheduler

    async def close(self) -> None:
        """Close the underlying scheduler."""
        await self._scheduler.close()

    async def send_message(self, channel_id: str | int, payload: str | dict[str, Any]) -> Any:
        """
        Post a message to a channel.

        Args:
            channel_id: Target channel.
            payload: Plain text content, or a full message payload.

        Returns:
            The created message.
        """
        body = {"content": payload} if isinstance(payload, str) else payload
        return await self._scheduler.submit(
            f"/channels/{channel_id}/messages", method="POST", body=body
        )

    async def react(self, channel_id: str | int, message_id: str | int, emoji: str) -> Any:
        """
        Add a reaction as the current user.

        Args:
            emoji: Unicode emoji or "name:id" for a custom emoji; URL-encoded here.
        """
        encoded = quote(emoji, safe="")
        return await self._scheduler.submit(
            f"/channels/{channel_id}/messages/{message_id}/reactions/{encoded}/@me",
            method="PUT",
        )

    async def fetch_guild(self, guild_id: str | int) -> Any:
        return await self._scheduler.submit(f"/guilds/{guild_id}")

    async def fetch_channel(self, channel_id: str | int) -> Any:
        return await self._scheduler.submit(f"/channels/{channel_id}")

    async def fetch_channels(self, guild_id: str | int) -> Any:
        return await self._scheduler.submit(f"/guilds/{guild_id}/channels")

    async def fetch_message(self, channel_id: str | int, message_id: str | int) -> Any:
        return await self._scheduler.submit(f"/channels/{channel_id}/messages/{message_id}")

    async def fetch_messages(
        self,
        channel_id: str | int,
        limit: int | None = None,
        before: str | int | None = None,
        after: str | int | None = None,
    ) -> Any:
        """
        Fetch a page of channel messages.

        Args:
            channel_id: Channel to read.
            limit: Page size.
            before: Only messages before this message ID.
            after: Only messages after this message ID.

        Returns:
            List of message payloads.
        """
        params = {
            key: value
            for key, value in (("limit", limit), ("before", before), ("after", after))
            if value is not None
        }
        endpoint = f"/channels/{channel_id}/messages"
        if params:
            endpoint = f"{endpoint}?{urlencode(params)}"
        return await self._scheduler.submit(endpoint)

    async def click_button(
        self,
        channel_id: str | int,
        message_id: str | int,
        application_id: str | int,
        guild_id: str | int | None,
        custom_id: str,
        session_id: str,
        message_flags: int = 0,
    ) -> Any:
        """
        Press a button component on a message.

        Args:
            session_id: Gateway session ID from READY.
            message_flags: Flags of the message carrying the button.
        """
        now_ms = self._time_fn() if self._time_fn is not None else None
        payload = {
            "type": INTERACTION_TYPE_MESSAGE_COMPONENT,
            "nonce": generate_nonce(now_ms),
            "guild_id": guild_id,
            "channel_id": channel_id,
            "message_id": message_id,
            "application_id": application_id,
            "session_id": session_id,
            "message_flags": message_flags,
            "data": {
                "component_type": COMPONENT_TYPE_BUTTON,
                "custom_id": custom_id,
            },
        }
        logger.debug("Clicking button", extra={"custom_id": custom_id})
        return await self._scheduler.submit("/interactions", method="POST", body=payload)
