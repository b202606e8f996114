"""gatecord: asyncio gateway + rate-limited REST client for Discord-style chat services."""

__version__ = "0.1.0"
