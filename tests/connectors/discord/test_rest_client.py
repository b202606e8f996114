"""Tests for DiscordRestClient endpoint helpers."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import orjson
import pytest

from gatecord.connectors.discord.rest_client import (
    SNOWFLAKE_EPOCH_MS,
    DiscordRestClient,
    generate_nonce,
)
from gatecord.connectors.discord.scheduler import RequestScheduler
from gatecord.connectors.discord.types import ClientConfig


class TestDiscordRestClient:
    """Tests for DiscordRestClient."""

    @pytest.fixture
    def scheduler(self) -> MagicMock:
        """Create a scheduler whose submit() is mocked."""
        scheduler = MagicMock(spec=RequestScheduler)
        scheduler.submit = AsyncMock(return_value={"id": "1"})
        scheduler.close = AsyncMock()
        return scheduler

    @pytest.fixture
    def client(self, scheduler: MagicMock) -> DiscordRestClient:
        return DiscordRestClient(scheduler=scheduler, time_fn=lambda: SNOWFLAKE_EPOCH_MS + 1)

    @pytest.mark.asyncio
    async def test_send_message_text(self, client: DiscordRestClient, scheduler: MagicMock) -> None:
        """Plain text becomes a content payload."""
        result = await client.send_message("123", "hello")

        assert result == {"id": "1"}
        scheduler.submit.assert_awaited_once_with(
            "/channels/123/messages", method="POST", body={"content": "hello"}
        )

    @pytest.mark.asyncio
    async def test_send_message_payload(
        self,
        client: DiscordRestClient,
        scheduler: MagicMock,
    ) -> None:
        payload = {"content": "hi", "tts": False}

        await client.send_message(123, payload)

        scheduler.submit.assert_awaited_once_with(
            "/channels/123/messages", method="POST", body=payload
        )

    @pytest.mark.asyncio
    async def test_react_encodes_emoji(
        self,
        client: DiscordRestClient,
        scheduler: MagicMock,
    ) -> None:
        await client.react("1", "2", "👍")
        await client.react("1", "2", "party:555")

        endpoints = [c.args[0] for c in scheduler.submit.await_args_list]
        assert endpoints == [
            "/channels/1/messages/2/reactions/%F0%9F%91%8D/@me",
            "/channels/1/messages/2/reactions/party%3A555/@me",
        ]
        assert all(c.kwargs["method"] == "PUT" for c in scheduler.submit.await_args_list)

    @pytest.mark.asyncio
    async def test_fetch_helpers(self, client: DiscordRestClient, scheduler: MagicMock) -> None:
        await client.fetch_guild("10")
        await client.fetch_channel("20")
        await client.fetch_channels("10")
        await client.fetch_message("20", "30")

        endpoints = [c.args[0] for c in scheduler.submit.await_args_list]
        assert endpoints == [
            "/guilds/10",
            "/channels/20",
            "/guilds/10/channels",
            "/channels/20/messages/30",
        ]

    @pytest.mark.asyncio
    async def test_fetch_messages_query(
        self,
        client: DiscordRestClient,
        scheduler: MagicMock,
    ) -> None:
        await client.fetch_messages("20")
        await client.fetch_messages("20", limit=50, before="99")
        await client.fetch_messages("20", after=5)

        endpoints = [c.args[0] for c in scheduler.submit.await_args_list]
        assert endpoints == [
            "/channels/20/messages",
            "/channels/20/messages?limit=50&before=99",
            "/channels/20/messages?after=5",
        ]

    @pytest.mark.asyncio
    async def test_click_button(self, client: DiscordRestClient, scheduler: MagicMock) -> None:
        await client.click_button("20", "30", "40", "10", "btn:ok", "sess", message_flags=64)

        call = scheduler.submit.await_args
        assert call.args[0] == "/interactions"
        assert call.kwargs["method"] == "POST"
        body = call.kwargs["body"]
        assert body["type"] == 3
        assert int(body["nonce"]) >> 22 == 1
        assert body["channel_id"] == "20"
        assert body["message_id"] == "30"
        assert body["application_id"] == "40"
        assert body["guild_id"] == "10"
        assert body["session_id"] == "sess"
        assert body["message_flags"] == 64
        assert body["data"] == {"component_type": 2, "custom_id": "btn:ok"}

    @pytest.mark.asyncio
    async def test_close_closes_scheduler(
        self,
        client: DiscordRestClient,
        scheduler: MagicMock,
    ) -> None:
        await client.close()
        scheduler.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_through_real_scheduler(self) -> None:
        """Helpers reach the HTTP layer with the configured base URL."""
        config = ClientConfig(token="t", rest_base_url="http://api.test", inter_request_delay_ms=0)
        client = DiscordRestClient(config)

        response = MagicMock()
        response.status = 200
        response.headers = {}
        response.read = AsyncMock(return_value=orjson.dumps({"id": "g"}))
        response.__aenter__ = AsyncMock(return_value=response)
        response.__aexit__ = AsyncMock(return_value=None)

        with patch.object(aiohttp.ClientSession, "request", return_value=response) as request:
            guild = await client.fetch_guild(7)

        assert guild == {"id": "g"}
        assert request.call_args.args == ("GET", "http://api.test/guilds/7")

        await client.close()


class TestGenerateNonce:
    """Tests for generate_nonce."""

    def test_snowflake_layout(self) -> None:
        nonce = generate_nonce(SNOWFLAKE_EPOCH_MS + 1000)
        assert int(nonce) >> 22 == 1000

    def test_monotonic_in_time(self) -> None:
        assert int(generate_nonce(SNOWFLAKE_EPOCH_MS + 2)) > int(
            generate_nonce(SNOWFLAKE_EPOCH_MS + 1)
        )

    def test_wall_clock_default(self) -> None:
        assert int(generate_nonce()) > 0

    def test_same_millisecond_nonces_differ(self) -> None:
        now_ms = SNOWFLAKE_EPOCH_MS + 5
        nonces = {generate_nonce(now_ms) for _ in range(50)}
        assert len(nonces) > 1
        assert all(int(n) >> 22 == 5 for n in nonces)

    def test_seeded_rng_is_deterministic(self) -> None:
        now_ms = SNOWFLAKE_EPOCH_MS + 5
        assert generate_nonce(now_ms, rng=random.Random(7)) == generate_nonce(
            now_ms, rng=random.Random(7)
        )
        assert int(generate_nonce(now_ms, rng=random.Random(7))) & ((1 << 22) - 1) == (
            random.Random(7).getrandbits(22)
        )
