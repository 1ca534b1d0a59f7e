"""Tests for agent/registry.py."""

import asyncio

import pytest

from agent.conversation import ConversationContext
from agent.registry import ContextRegistry, ConversationKey


class TestConversationKey:
    def test_channel_only(self):
        assert str(ConversationKey("42")) == "channel:42"

    def test_guild_channel(self):
        assert str(ConversationKey("42", guild_id="7")) == "guild:7/channel:42"

    def test_hashable_and_equal(self):
        assert {ConversationKey("1", "2"): "x"}[ConversationKey("1", "2")] == "x"
        assert ConversationKey("1") != ConversationKey("1", "2")


class TestContextRegistry:
    def test_resolve_unknown_returns_none(self):
        registry = ContextRegistry()
        assert registry.resolve(ConversationKey("1")) is None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_get_or_create_reuses_context(self):
        registry = ContextRegistry()
        key = ConversationKey("1", "g")
        first = await registry.get_or_create(key, is_private=False)
        second = await registry.get_or_create(key, is_private=False)
        assert first is second
        assert key in registry
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_privacy_is_fixed_at_creation(self):
        registry = ContextRegistry()
        key = ConversationKey("dm")
        context = await registry.get_or_create(key, is_private=True)
        assert context.is_private is True
        again = await registry.get_or_create(key, is_private=False)
        assert again.is_private is True

    @pytest.mark.asyncio
    async def test_create_if_absent_never_overwrites(self):
        registry = ContextRegistry()
        key = ConversationKey("1")
        original = await registry.create_if_absent(key, is_private=False)
        await original.append_human("A", "hi")
        result = await registry.create_if_absent(key, is_private=False)
        assert result is original
        assert len(result.human_turns) == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_share_one_context(self):
        calls = []

        def factory(is_private):
            calls.append(is_private)
            return ConversationContext(is_private)

        registry = ContextRegistry(factory=factory)
        key = ConversationKey("busy", "g")
        contexts = await asyncio.gather(*[
            registry.get_or_create(key, is_private=False) for _ in range(10)
        ])
        assert all(c is contexts[0] for c in contexts)
        assert calls == [False]

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        registry = ContextRegistry()
        a = await registry.get_or_create(ConversationKey("1", "g"), is_private=False)
        b = await registry.get_or_create(ConversationKey("2", "g"), is_private=False)
        await a.append_human("A", "hi")
        assert b.human_turns == []
