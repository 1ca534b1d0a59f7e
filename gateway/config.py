"""
Gateway configuration.

Settings are layered, later layers winning:
  1. Dataclass defaults
  2. ~/.dorothy/config.yaml  (DOROTHY_HOME overrides the directory)
  3. Environment variables (including ones loaded from .env files)

Environment variables:
  DISCORD_TOKEN              Bot token; enables the Discord platform
  DISCORD_ALLOWED_CHANNELS   Comma-separated channel IDs served in guilds
  DISCORD_ALLOWED_USERS      Comma-separated user IDs allowed to DM the bot
  DOROTHY_ADMIN_USERS        Comma-separated user IDs allowed to run commands
  DOROTHY_COMMAND_PREFIX     Command marker (default "!")
  DOROTHY_PREAMBLE           Initial preamble for new conversations
  COMPLETION_API_KEY         Provider key (falls back to OPENAI_API_KEY)
  COMPLETION_BASE_URL        OpenAI-compatible API root
  COMPLETION_MODEL           Completions model name
  COMPLETION_TIMEOUT         Seconds per completion call
  COMPLETION_MAX_RETRIES     Retries performed by the HTTP client
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from agent.conversation import SamplingConfig
from dorothy_constants import (
    DEFAULT_COMMAND_PREFIX,
    DEFAULT_COMPLETION_MODEL,
    DEFAULT_COMPLETION_TIMEOUT,
    DEFAULT_MAX_ROUNDS,
    DEFAULT_PREAMBLE,
    MAX_NEW_TOKENS_PER_CALL,
    OPENAI_BASE_URL,
    TOKEN_BUDGET_CEILING,
)

logger = logging.getLogger(__name__)


def get_dorothy_home() -> Path:
    return Path(os.getenv("DOROTHY_HOME", Path.home() / ".dorothy"))


def parse_comma_separated(value: Any) -> List[str]:
    """Parse a comma-separated string (or a YAML list) into stripped items."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if str(v).strip()]
    value = str(value)
    if not value.strip():
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _coerce(value: Any, kind: type, default: Any, name: str) -> Any:
    """Convert ``value`` to ``kind``, logging and keeping ``default`` on failure."""
    if value is None or value == "":
        return default
    try:
        return kind(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %r, using %r", name, value, default)
        return default


class Platform(Enum):
    DISCORD = "discord"


@dataclass
class PlatformConfig:
    enabled: bool = False
    token: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformConfig":
        return cls(
            enabled=bool(data.get("enabled", False)),
            token=str(data.get("token", "") or ""),
            extra=dict(data.get("extra", {}) or {}),
        )


@dataclass
class CompletionSettings:
    api_key: str = ""
    base_url: str = OPENAI_BASE_URL
    model: str = DEFAULT_COMPLETION_MODEL
    timeout: float = DEFAULT_COMPLETION_TIMEOUT
    max_retries: int = 0
    max_tokens: int = MAX_NEW_TOKENS_PER_CALL
    max_rounds: int = DEFAULT_MAX_ROUNDS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletionSettings":
        defaults = cls()
        return cls(
            api_key=str(data.get("api_key", "") or ""),
            base_url=str(data.get("base_url") or defaults.base_url),
            model=str(data.get("model") or defaults.model),
            timeout=_coerce(data.get("timeout"), float, defaults.timeout, "completion.timeout"),
            max_retries=_coerce(data.get("max_retries"), int, defaults.max_retries,
                                "completion.max_retries"),
            max_tokens=_coerce(data.get("max_tokens"), int, defaults.max_tokens,
                               "completion.max_tokens"),
            max_rounds=_coerce(data.get("max_rounds"), int, defaults.max_rounds,
                               "completion.max_rounds"),
        )


@dataclass
class ConversationSettings:
    preamble: str = DEFAULT_PREAMBLE
    token_ceiling: int = TOKEN_BUDGET_CEILING
    sampling: SamplingConfig = field(default_factory=SamplingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSettings":
        defaults = cls()
        return cls(
            preamble=str(data.get("preamble") or defaults.preamble),
            token_ceiling=_coerce(data.get("token_ceiling"), int, defaults.token_ceiling,
                                  "conversation.token_ceiling"),
            sampling=SamplingConfig.from_dict(data.get("sampling", {}) or {}),
        )


@dataclass
class GatewayConfig:
    """Top-level gateway settings."""

    platforms: Dict[Platform, PlatformConfig] = field(default_factory=dict)
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    conversation: ConversationSettings = field(default_factory=ConversationSettings)
    admin_users: List[str] = field(default_factory=list)
    command_prefix: str = DEFAULT_COMMAND_PREFIX
    logs_dir: Path = field(default_factory=lambda: get_dorothy_home() / "logs")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GatewayConfig":
        platforms = {}
        for name, platform_data in (data.get("platforms", {}) or {}).items():
            try:
                platform = Platform(name)
            except ValueError:
                logger.warning("Unknown platform in config: %s", name)
                continue
            platforms[platform] = PlatformConfig.from_dict(platform_data or {})

        config = cls(
            platforms=platforms,
            completion=CompletionSettings.from_dict(data.get("completion", {}) or {}),
            conversation=ConversationSettings.from_dict(data.get("conversation", {}) or {}),
            admin_users=parse_comma_separated(data.get("admin_users")),
            command_prefix=str(data.get("command_prefix") or DEFAULT_COMMAND_PREFIX),
        )
        if data.get("logs_dir"):
            config.logs_dir = Path(data["logs_dir"]).expanduser()
        return config


def load_env_files() -> None:
    """Load ~/.dorothy/.env, then the project .env as a fallback."""
    env_path = get_dorothy_home() / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    load_dotenv()


def _load_yaml_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level must be a mapping", path)
        return {}
    return data


def _apply_env_overrides(config: GatewayConfig) -> None:
    """Overlay environment variables onto ``config`` in place."""
    discord_token = os.getenv("DISCORD_TOKEN")
    if discord_token:
        discord = config.platforms.setdefault(Platform.DISCORD, PlatformConfig())
        discord.enabled = True
        discord.token = discord_token
    if Platform.DISCORD in config.platforms:
        extra = config.platforms[Platform.DISCORD].extra
        for env_var, key in (
            ("DISCORD_ALLOWED_CHANNELS", "allowed_channels"),
            ("DISCORD_ALLOWED_USERS", "allowed_users"),
        ):
            if os.getenv(env_var) is not None:
                extra[key] = os.getenv(env_var)

    if os.getenv("DOROTHY_ADMIN_USERS") is not None:
        config.admin_users = parse_comma_separated(os.getenv("DOROTHY_ADMIN_USERS"))
    if os.getenv("DOROTHY_COMMAND_PREFIX"):
        config.command_prefix = os.getenv("DOROTHY_COMMAND_PREFIX")
    if os.getenv("DOROTHY_PREAMBLE"):
        config.conversation.preamble = os.getenv("DOROTHY_PREAMBLE")

    completion = config.completion
    api_key = os.getenv("COMPLETION_API_KEY") or os.getenv("OPENAI_API_KEY")
    if api_key:
        completion.api_key = api_key
    if os.getenv("COMPLETION_BASE_URL"):
        completion.base_url = os.getenv("COMPLETION_BASE_URL")
    if os.getenv("COMPLETION_MODEL"):
        completion.model = os.getenv("COMPLETION_MODEL")
    completion.timeout = _coerce(os.getenv("COMPLETION_TIMEOUT"), float,
                                 completion.timeout, "COMPLETION_TIMEOUT")
    completion.max_retries = _coerce(os.getenv("COMPLETION_MAX_RETRIES"), int,
                                     completion.max_retries, "COMPLETION_MAX_RETRIES")


def load_gateway_config(config_path: Optional[Path] = None) -> GatewayConfig:
    """Build the gateway config from config.yaml and the environment."""
    path = config_path or (get_dorothy_home() / "config.yaml")
    config = GatewayConfig.from_dict(_load_yaml_config(path))
    _apply_env_overrides(config)
    return config
