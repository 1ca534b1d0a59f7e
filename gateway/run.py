"""
Gateway runner - entry point for the Discord integration.

This module provides:
- GatewayRunner: owns the conversation registry, the command interpreter and
  the completion client, and routes platform messages through them
- start_gateway(): run the gateway until interrupted
- main(): command-line entry point

Usage:
    # Start the gateway
    python -m gateway.run

    # Verbose logging (prompts, stop tokens, chat logs)
    python -m gateway.run --verbose
"""

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import fire

from agent.commands import CommandInterpreter
from agent.completion_client import CompletionClient, CompletionError
from agent.completion_loop import generate_response
from agent.config_validator import ensure_valid
from agent.conversation import ConversationContext
from agent.registry import ContextRegistry
from dorothy_constants import COMPLETION_FAILED_MESSAGE, DEFAULT_AGENT_NAME
from gateway.config import (
    GatewayConfig,
    Platform,
    load_env_files,
    load_gateway_config,
    parse_comma_separated,
)
from gateway.platforms.base import BasePlatformAdapter, MessageEvent

logger = logging.getLogger(__name__)


class GatewayRunner:
    """
    Main gateway controller.

    Manages the platform adapter lifecycle and routes each inbound message:
    filter -> conversation lookup -> command or human turn -> completion
    loop -> reply.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        adapter: Optional[BasePlatformAdapter] = None,
        client: Optional[CompletionClient] = None,
    ):
        self.config = config or load_gateway_config()
        self.adapter = adapter
        self.client = client or self._build_client()
        self.registry = ContextRegistry(factory=self._new_context)
        self.interpreter = CommandInterpreter(
            allowed_users=self.config.admin_users,
            prefix=self.config.command_prefix,
        )

        discord_cfg = self.config.platforms.get(Platform.DISCORD)
        extra = discord_cfg.extra if discord_cfg else {}
        self.allowed_channels = set(parse_comma_separated(extra.get("allowed_channels")))
        self.allowed_dm_users = set(parse_comma_separated(extra.get("allowed_users")))

        self._shutdown_event = asyncio.Event()

    def _build_client(self) -> CompletionClient:
        settings = self.config.completion
        return CompletionClient(
            settings.api_key,
            base_url=settings.base_url,
            model=settings.model,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
        )

    def _new_context(self, is_private: bool) -> ConversationContext:
        settings = self.config.conversation
        return ConversationContext(
            is_private,
            preamble=settings.preamble,
            config=settings.sampling.copy(),
            token_ceiling=settings.token_ceiling,
        )

    @property
    def agent_name(self) -> str:
        if self.adapter is None:
            return DEFAULT_AGENT_NAME
        return self.adapter.agent_name

    # ------------------------------------------------------------------
    # Message pipeline
    # ------------------------------------------------------------------

    def should_respond(self, event: MessageEvent) -> bool:
        """Filter out our own messages and chats we are not configured for."""
        if event.is_from_self:
            return False
        if event.is_private:
            return not self.allowed_dm_users or event.user_id in self.allowed_dm_users
        return not self.allowed_channels or event.chat_id in self.allowed_channels

    async def _reply(self, chat_id: str, text: str) -> None:
        if self.adapter is None:
            return
        result = await self.adapter.send(chat_id, text)
        if not result.success:
            logger.error("Failed to send message to %s: %s", chat_id, result.error)

    async def handle_message(self, event: MessageEvent) -> Optional[str]:
        """Process one inbound message. Returns the text sent back, if any."""
        if not self.should_respond(event):
            return None

        context = await self.registry.get_or_create(
            event.conversation_key, is_private=event.is_private
        )
        agent_name = self.agent_name
        text = event.text.replace("\n", " ").strip()

        if self.interpreter.is_command(text):
            logger.debug("Parsing command from %s", event.user_id)
            reply = await self.interpreter.handle(text, event.user_id, context, agent_name)
            if reply is not None:
                await self._reply(event.chat_id, reply)
            return reply

        await context.append_human(event.user_name, text)
        if self.adapter is not None:
            await self.adapter.send_typing(event.chat_id)

        settings = self.config.completion
        try:
            reply = await generate_response(
                self.client,
                context,
                agent_name,
                max_tokens=settings.max_tokens,
                timeout=settings.timeout,
                max_rounds=settings.max_rounds,
            )
        except CompletionError as e:
            logger.error("Failed to get completions for %s: %s", event.conversation_key, e)
            await self._reply(event.chat_id, COMPLETION_FAILED_MESSAGE)
            return COMPLETION_FAILED_MESSAGE

        if not reply.strip():
            logger.info("Empty completion for %s, nothing to send", event.conversation_key)
            return None

        await self._reply(event.chat_id, reply)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("==== CHAT LOG SO FAR (WITH AI) ====\n%s",
                         await context.render(agent_name))
            logger.debug("%s tokens so far", context.token_estimate)
        return reply

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _create_adapter(self) -> Optional[BasePlatformAdapter]:
        discord_cfg = self.config.platforms.get(Platform.DISCORD)
        if not discord_cfg or not discord_cfg.enabled:
            return None
        from gateway.platforms.discord import DiscordAdapter
        return DiscordAdapter(discord_cfg)

    async def start(self) -> bool:
        """
        Start the gateway and connect the platform adapter.

        Returns True if the adapter connected successfully.
        """
        logger.info("Starting Dorothy Gateway...")
        ensure_valid(self.config)

        if self.adapter is None:
            self.adapter = self._create_adapter()
        if self.adapter is None:
            logger.error("No platform adapter enabled")
            return False

        self.adapter.set_message_handler(self.handle_message)
        if not await self.adapter.connect():
            logger.error("Failed to connect %s", self.adapter.name)
            return False
        logger.info("%s connected as %s", self.adapter.name, self.adapter.agent_name)
        return True

    async def stop(self) -> None:
        logger.info("Stopping gateway...")
        if self.adapter is not None:
            try:
                await self.adapter.disconnect()
            except Exception as e:
                logger.error("Error disconnecting %s: %s", self.adapter.name, e)
        await self.client.close()
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()


def _setup_logging(logs_dir: Path, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    root = logging.getLogger()
    root.setLevel(level)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(fmt)
    root.addHandler(stream_handler)

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / "gateway.log", maxBytes=5 * 1024 * 1024, backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)
    except OSError as e:
        logger.warning("File logging disabled: %s", e)

    # Third-party clients are noisy at DEBUG
    for noisy in ("httpx", "httpcore", "openai", "discord"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


async def start_gateway(config: Optional[GatewayConfig] = None) -> bool:
    """
    Start the gateway and run until interrupted.

    Returns True if the gateway ran and shut down cleanly.
    """
    runner = GatewayRunner(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(runner.stop()))
        except NotImplementedError:
            pass  # Windows

    if not await runner.start():
        await runner.stop()
        return False
    await runner.wait_for_shutdown()
    return True


def main(verbose: bool = False, config: Optional[str] = None) -> None:
    """Run the Dorothy gateway.

    Args:
        verbose: Log prompts, stop tokens and chat logs at DEBUG level.
        config: Path to a config.yaml (defaults to ~/.dorothy/config.yaml).
    """
    load_env_files()
    gateway_config = load_gateway_config(Path(config).expanduser() if config else None)
    _setup_logging(gateway_config.logs_dir, verbose=verbose)
    ok = asyncio.run(start_gateway(gateway_config))
    if not ok:
        sys.exit(1)


def cli() -> None:
    fire.Fire(main)


if __name__ == "__main__":
    cli()
