"""Tests for gateway/run.py -- message routing through the GatewayRunner."""

from unittest.mock import AsyncMock

import pytest

from agent.completion_client import (
    CompletionChoice,
    CompletionError,
    CompletionResult,
    FinishReason,
)
from agent.config_validator import ConfigValidationError
from agent.registry import ConversationKey
from dorothy_constants import COMPLETION_FAILED_MESSAGE
from gateway.config import GatewayConfig, Platform, PlatformConfig
from gateway.platforms.base import BasePlatformAdapter, MessageEvent, SendResult
from gateway.run import GatewayRunner


class FakeAdapter(BasePlatformAdapter):
    def __init__(self, agent_name="Dorothy", connect_ok=True):
        super().__init__(PlatformConfig(enabled=True, token="tok"), Platform.DISCORD)
        self._agent_name = agent_name
        self.connect_ok = connect_ok
        self.sent = []
        self.typing = []
        self.disconnected = False

    async def connect(self):
        self._running = self.connect_ok
        return self.connect_ok

    async def disconnect(self):
        self.disconnected = True

    async def send(self, chat_id, content):
        self.sent.append((chat_id, content))
        return SendResult(success=True)

    async def send_typing(self, chat_id):
        self.typing.append(chat_id)


class FakeClient:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.requests = []
        self.closed = False

    async def get_completion(self, request):
        self.requests.append(request)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self):
        self.closed = True


def _result(text, reason=FinishReason.STOP):
    return CompletionResult(choices=[CompletionChoice(text=text, finish_reason=reason)])


def _config(allowed_channels="", allowed_users="", admins=("1",)):
    config = GatewayConfig(admin_users=list(admins))
    config.platforms[Platform.DISCORD] = PlatformConfig(
        enabled=True,
        token="tok",
        extra={"allowed_channels": allowed_channels, "allowed_users": allowed_users},
    )
    config.completion.api_key = "sk-test"
    config.conversation.preamble = "Hello."
    return config


def _runner(results=None, **config_kwargs):
    adapter = FakeAdapter()
    client = FakeClient(results)
    runner = GatewayRunner(config=_config(**config_kwargs), adapter=adapter, client=client)
    return runner, adapter, client


def _guild_event(text, user_id="2", user_name="Alice", chat_id="10", guild_id="g"):
    return MessageEvent(text=text, chat_id=chat_id, guild_id=guild_id,
                        user_id=user_id, user_name=user_name)


def _dm_event(text, user_id="2", user_name="Alice"):
    return MessageEvent(text=text, chat_id="dm-" + user_id, user_id=user_id,
                        user_name=user_name, is_private=True)


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


class TestShouldRespond:
    def test_own_messages_ignored(self):
        runner, _, _ = _runner()
        event = _guild_event("hi")
        event.is_from_self = True
        assert runner.should_respond(event) is False

    def test_empty_allow_lists_accept_everything(self):
        runner, _, _ = _runner()
        assert runner.should_respond(_guild_event("hi")) is True
        assert runner.should_respond(_dm_event("hi")) is True

    def test_channel_allow_list(self):
        runner, _, _ = _runner(allowed_channels="10,11")
        assert runner.should_respond(_guild_event("hi", chat_id="10")) is True
        assert runner.should_respond(_guild_event("hi", chat_id="12")) is False

    def test_dm_allow_list(self):
        runner, _, _ = _runner(allowed_users="2")
        assert runner.should_respond(_dm_event("hi", user_id="2")) is True
        assert runner.should_respond(_dm_event("hi", user_id="3")) is False

    @pytest.mark.asyncio
    async def test_filtered_message_creates_no_conversation(self):
        runner, adapter, client = _runner(allowed_channels="10")
        assert await runner.handle_message(_guild_event("hi", chat_id="99")) is None
        assert len(runner.registry) == 0
        assert adapter.sent == []
        assert client.requests == []


# ---------------------------------------------------------------------------
# Chat path
# ---------------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_reply_is_sent(self):
        runner, adapter, client = _runner([_result(" Hi Alice!")])

        reply = await runner.handle_message(_guild_event("hi"))

        assert reply == " Hi Alice!"
        assert adapter.sent == [("10", " Hi Alice!")]
        assert adapter.typing == ["10"]
        assert client.requests[0].prompt == "Hello.\n\nAlice: hi\nDorothy:"

    @pytest.mark.asyncio
    async def test_turns_accumulate_in_conversation(self):
        runner, _, client = _runner([_result(" Hey"), _result(" Fine")])

        await runner.handle_message(_guild_event("hi"))
        await runner.handle_message(_guild_event("how are you", user_name="Bob", user_id="3"))

        assert client.requests[1].prompt == (
            "Hello.\n\nAlice: hi\nDorothy: Hey\nBob: how are you\nDorothy:"
        )

    @pytest.mark.asyncio
    async def test_dm_uses_private_conversation(self):
        runner, _, client = _runner([_result(" yo")])

        await runner.handle_message(_dm_event("hi"))

        context = runner.registry.resolve(ConversationKey("dm-2"))
        assert context is not None and context.is_private is True
        assert client.requests[0].prompt == "Hello.\n\nHuman: hi\nDorothy:"

    @pytest.mark.asyncio
    async def test_channels_are_isolated(self):
        runner, _, _ = _runner([_result(" a"), _result(" b")])

        await runner.handle_message(_guild_event("one", chat_id="10"))
        await runner.handle_message(_guild_event("two", chat_id="11"))

        first = runner.registry.resolve(ConversationKey("10", "g"))
        second = runner.registry.resolve(ConversationKey("11", "g"))
        assert [t.text for t in first.human_turns] == ["one"]
        assert [t.text for t in second.human_turns] == ["two"]

    @pytest.mark.asyncio
    async def test_contexts_get_their_own_sampling_config(self):
        runner, _, _ = _runner([_result(" a"), _result(" b")])

        await runner.handle_message(_guild_event("one", chat_id="10"))
        await runner.handle_message(_guild_event("two", chat_id="11"))

        first = runner.registry.resolve(ConversationKey("10", "g"))
        second = runner.registry.resolve(ConversationKey("11", "g"))
        first.config.set("temperature", 0.1)
        assert second.config.temperature == 0.9
        assert runner.config.conversation.sampling.temperature == 0.9

    @pytest.mark.asyncio
    async def test_completion_failure_sends_notice(self):
        runner, adapter, _ = _runner([CompletionError("boom")])

        reply = await runner.handle_message(_guild_event("hi"))

        assert reply == COMPLETION_FAILED_MESSAGE
        assert adapter.sent == [("10", COMPLETION_FAILED_MESSAGE)]
        context = runner.registry.resolve(ConversationKey("10", "g"))
        assert len(context.human_turns) == 1

    @pytest.mark.asyncio
    async def test_empty_completion_sends_nothing(self):
        runner, adapter, _ = _runner([CompletionResult(choices=[])])

        assert await runner.handle_message(_guild_event("hi")) is None
        assert adapter.sent == []


# ---------------------------------------------------------------------------
# Command path
# ---------------------------------------------------------------------------


class TestCommands:
    @pytest.mark.asyncio
    async def test_admin_reset(self):
        runner, adapter, client = _runner([_result(" Hey")])
        await runner.handle_message(_guild_event("hi"))

        reply = await runner.handle_message(_guild_event("!reset", user_id="1"))

        assert reply == "[Chatlog Cleared]"
        assert adapter.sent[-1] == ("10", "[Chatlog Cleared]")
        context = runner.registry.resolve(ConversationKey("10", "g"))
        assert context.human_turns == [] and context.agent_turns == []
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_non_admin_command_is_swallowed(self):
        runner, adapter, client = _runner()

        reply = await runner.handle_message(_guild_event("!reset", user_id="2"))

        assert reply is None
        assert adapter.sent == []
        assert client.requests == []
        context = runner.registry.resolve(ConversationKey("10", "g"))
        assert context.human_turns == []

    @pytest.mark.asyncio
    async def test_command_matching_is_case_sensitive_and_trims(self):
        runner, adapter, client = _runner([_result(" Hey")])
        await runner.handle_message(_guild_event("hi"))

        assert await runner.handle_message(_guild_event("!RESET", user_id="1")) is None
        context = runner.registry.resolve(ConversationKey("10", "g"))
        assert len(context.human_turns) == 1

        reply = await runner.handle_message(_guild_event("  !reset  ", user_id="1"))
        assert reply == "[Chatlog Cleared]"
        assert context.human_turns == []
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_silent_option_command(self):
        runner, adapter, _ = _runner()

        assert await runner.handle_message(_guild_event("!temperature 0.2", user_id="1")) is None

        context = runner.registry.resolve(ConversationKey("10", "g"))
        assert context.config.temperature == 0.2
        assert adapter.sent == []

    @pytest.mark.asyncio
    async def test_log_uses_agent_name(self):
        runner, _, _ = _runner([_result(" Hey")])
        await runner.handle_message(_guild_event("hi"))

        reply = await runner.handle_message(_guild_event("!log", user_id="1"))

        assert reply == "```Hello.\n\nAlice: hi\nDorothy: Hey ```"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_agent_name_defaults_without_adapter(self):
        runner = GatewayRunner(config=_config(), client=FakeClient())
        assert runner.agent_name == "AI"

    @pytest.mark.asyncio
    async def test_start_registers_handler(self):
        runner, adapter, _ = _runner()
        assert await runner.start() is True
        assert adapter._message_handler == runner.handle_message

    @pytest.mark.asyncio
    async def test_start_fails_when_connect_fails(self):
        adapter = FakeAdapter(connect_ok=False)
        runner = GatewayRunner(config=_config(), adapter=adapter, client=FakeClient())
        assert await runner.start() is False

    @pytest.mark.asyncio
    async def test_start_rejects_invalid_config(self):
        config = _config()
        config.completion.api_key = ""
        runner = GatewayRunner(config=config, adapter=FakeAdapter(), client=FakeClient())
        with pytest.raises(ConfigValidationError):
            await runner.start()

    @pytest.mark.asyncio
    async def test_stop_disconnects_and_closes(self):
        runner, adapter, client = _runner()
        await runner.stop()
        assert adapter.disconnected is True
        assert client.closed is True
        await runner.wait_for_shutdown()

    @pytest.mark.asyncio
    async def test_stop_survives_disconnect_error(self):
        runner, adapter, client = _runner()
        adapter.disconnect = AsyncMock(side_effect=RuntimeError("gone"))
        await runner.stop()
        assert client.closed is True
