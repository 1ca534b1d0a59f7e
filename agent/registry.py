"""Conversation registry -- one ConversationContext per channel or DM."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from agent.conversation import ConversationContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationKey:
    """Identity of a conversation: a channel, optionally inside a guild."""

    channel_id: str
    guild_id: Optional[str] = None

    def __str__(self) -> str:
        if self.guild_id is None:
            return f"channel:{self.channel_id}"
        return f"guild:{self.guild_id}/channel:{self.channel_id}"


ContextFactory = Callable[[bool], ConversationContext]


class ContextRegistry:
    """
    Maps conversation keys to their contexts, creating them lazily.

    Lookups are plain dict reads. Inserts go through ``_lock`` with the
    existence check inside the critical section, so two first messages for
    the same key always end up sharing one context.

    Usage:
        registry = ContextRegistry()
        ctx = await registry.get_or_create(key, is_private=False)
    """

    def __init__(self, factory: Optional[ContextFactory] = None):
        self._factory: ContextFactory = factory or (
            lambda is_private: ConversationContext(is_private)
        )
        self._contexts: Dict[ConversationKey, ConversationContext] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, key: ConversationKey) -> bool:
        return key in self._contexts

    def resolve(self, key: ConversationKey) -> Optional[ConversationContext]:
        return self._contexts.get(key)

    async def create_if_absent(
        self, key: ConversationKey, is_private: bool
    ) -> ConversationContext:
        """Insert a fresh context unless one exists; return the stored one."""
        async with self._lock:
            existing = self._contexts.get(key)
            if existing is not None:
                return existing
            context = self._factory(is_private)
            self._contexts[key] = context
            logger.info("Created %s conversation for %s",
                        "private" if is_private else "group", key)
            return context

    async def get_or_create(
        self, key: ConversationKey, is_private: bool
    ) -> ConversationContext:
        context = self.resolve(key)
        if context is not None:
            return context
        return await self.create_if_absent(key, is_private)
