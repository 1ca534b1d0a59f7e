"""
Discord platform adapter.

Uses discord.py's gateway client to receive messages from guild channels
and direct messages, and to send replies and typing indicators.

Requires:
- discord.py (messaging extra)
- DISCORD_TOKEN env var (bot token, with the message content intent enabled)
"""

import asyncio
import logging
import os
from typing import Any, Optional

try:
    import discord
    DISCORD_AVAILABLE = True
except ImportError:
    DISCORD_AVAILABLE = False
    discord = None  # type: ignore[assignment]

from gateway.config import Platform, PlatformConfig
from gateway.platforms.base import (
    BasePlatformAdapter,
    MessageEvent,
    SendResult,
)

logger = logging.getLogger(__name__)

READY_TIMEOUT = 60.0  # seconds to wait for the READY event after login


def check_discord_requirements() -> bool:
    """Check if Discord dependencies are available and configured."""
    if not DISCORD_AVAILABLE:
        return False
    if not os.getenv("DISCORD_TOKEN"):
        return False
    return True


class DiscordAdapter(BasePlatformAdapter):
    """
    Discord adapter built on ``discord.Client``.

    Every inbound message is normalized (mentions resolved to names,
    newlines folded into spaces) and passed to the gateway. discord.py
    dispatches each event in its own task, so conversations are handled
    concurrently.
    """

    MAX_MESSAGE_LENGTH = 2000

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.DISCORD)
        self._token: str = config.token or os.getenv("DISCORD_TOKEN", "")
        self._client: Optional["discord.Client"] = None
        self._client_task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        if not DISCORD_AVAILABLE:
            logger.error("[%s] discord.py not installed. Run: pip install discord.py", self.name)
            return False
        if not self._token:
            logger.error("[%s] No DISCORD_TOKEN configured", self.name)
            return False

        intents = discord.Intents.default()
        intents.message_content = True
        self._client = discord.Client(intents=intents)
        self._register_events(self._client)
        self._client_task = asyncio.create_task(self._client.start(self._token))

        try:
            await asyncio.wait_for(self._ready.wait(), timeout=READY_TIMEOUT)
        except asyncio.TimeoutError:
            if self._client_task.done() and self._client_task.exception():
                logger.error("[%s] Failed to connect: %s", self.name,
                             self._client_task.exception())
            else:
                logger.error("[%s] Timed out waiting for READY", self.name)
            await self.disconnect()
            return False

        self._running = True
        return True

    async def disconnect(self) -> None:
        self._running = False
        if self._client is not None:
            await self._client.close()
        if self._client_task is not None and not self._client_task.done():
            self._client_task.cancel()
            try:
                await self._client_task
            except asyncio.CancelledError:
                pass
        logger.info("[%s] Disconnected", self.name)

    def _register_events(self, client: "discord.Client") -> None:
        @client.event
        async def on_ready():
            self._agent_name = client.user.name
            logger.info("%s is connected!", client.user.name)
            self._ready.set()

        @client.event
        async def on_message(message):
            self_id = client.user.id if client.user else None
            await self.handle_message(self.build_event(message, self_id))

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @staticmethod
    def build_event(message: Any, self_id: Optional[int] = None) -> MessageEvent:
        """Normalize a ``discord.Message`` into a MessageEvent."""
        text = (message.clean_content or "").replace("\n", " ").strip()
        guild = message.guild
        return MessageEvent(
            text=text,
            chat_id=str(message.channel.id),
            guild_id=str(guild.id) if guild is not None else None,
            user_id=str(message.author.id),
            user_name=message.author.name,
            is_private=guild is None,
            is_from_self=self_id is not None and message.author.id == self_id,
            timestamp=message.created_at,
        )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _resolve_channel(self, chat_id: str):
        channel = self._client.get_channel(int(chat_id))
        if channel is None:
            channel = await self._client.fetch_channel(int(chat_id))
        return channel

    async def send(self, chat_id: str, content: str) -> SendResult:
        if self._client is None:
            return SendResult(success=False, error="Not connected")
        try:
            channel = await self._resolve_channel(chat_id)
            sent = None
            for chunk in self.truncate_message(content, self.MAX_MESSAGE_LENGTH):
                sent = await channel.send(chunk)
            return SendResult(success=True, message_id=str(sent.id) if sent else None)
        except Exception as e:
            logger.error("[%s] Failed to send message: %s", self.name, e)
            return SendResult(success=False, error=str(e))

    async def send_typing(self, chat_id: str) -> None:
        if self._client is None:
            return
        try:
            channel = await self._resolve_channel(chat_id)
            await channel.typing()
        except Exception as e:
            logger.debug("[%s] Could not broadcast typing: %s", self.name, e)
