"""
Base platform adapter interface.

A platform adapter connects to one messaging service, normalizes inbound
messages into MessageEvent objects and hands them to the gateway's message
handler, and delivers replies back to a chat.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

from agent.registry import ConversationKey
from dorothy_constants import DEFAULT_AGENT_NAME
from gateway.config import Platform, PlatformConfig

logger = logging.getLogger(__name__)


@dataclass
class MessageEvent:
    """An inbound chat message, already normalized by its adapter."""

    text: str
    chat_id: str = ""
    guild_id: Optional[str] = None
    user_id: str = ""
    user_name: str = ""
    is_private: bool = False
    is_from_self: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def conversation_key(self) -> ConversationKey:
        return ConversationKey(channel_id=self.chat_id, guild_id=self.guild_id)


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    raw_response: Any = None


MessageHandler = Callable[[MessageEvent], Awaitable[Optional[str]]]


class BasePlatformAdapter(ABC):
    """
    Common surface for messaging platforms.

    Subclasses implement connect/disconnect/send/send_typing and call
    ``handle_message`` for every inbound message.
    """

    MAX_MESSAGE_LENGTH = 4096

    def __init__(self, config: PlatformConfig, platform: Platform):
        self.config = config
        self.platform = platform
        self._message_handler: Optional[MessageHandler] = None
        self._running = False
        self._agent_name: Optional[str] = None

    @property
    def name(self) -> str:
        return self.platform.value.title()

    @property
    def is_connected(self) -> bool:
        return self._running

    @property
    def agent_name(self) -> str:
        """The bot's own display name, once the platform has reported it."""
        return self._agent_name or DEFAULT_AGENT_NAME

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    async def handle_message(self, event: MessageEvent) -> Optional[str]:
        if self._message_handler is None:
            logger.warning("[%s] No message handler registered, dropping message", self.name)
            return None
        return await self._message_handler(event)

    @abstractmethod
    async def connect(self) -> bool:
        """Connect to the platform. Returns True on success."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect and release resources."""

    @abstractmethod
    async def send(self, chat_id: str, content: str) -> SendResult:
        """Deliver ``content`` to ``chat_id``."""

    async def send_typing(self, chat_id: str) -> None:
        """Show a typing indicator, where the platform has one."""
        return None

    @staticmethod
    def truncate_message(content: str, max_length: int = 4096) -> List[str]:
        """
        Split a long message into chunks no longer than ``max_length``.

        Prefers to break at newlines, then at spaces, and only cuts words
        when a single word is longer than the limit.
        """
        if len(content) <= max_length:
            return [content]

        chunks = []
        remaining = content
        while len(remaining) > max_length:
            window = remaining[:max_length]
            split_at = window.rfind("\n")
            if split_at <= 0:
                split_at = window.rfind(" ")
            if split_at <= 0:
                split_at = max_length
            chunks.append(remaining[:split_at])
            remaining = remaining[split_at:].lstrip("\n ")
        if remaining:
            chunks.append(remaining)
        return chunks
