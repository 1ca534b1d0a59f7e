"""In-band operator commands (``!temperature 0.5``, ``!reset``, ``!info`` ...).

Parsing and execution are separate steps. ``parse_command`` turns a line of
text into one of the command dataclasses below without touching any state;
``CommandInterpreter.execute`` applies a parsed command to a
ConversationContext and returns the reply to send back, if any.

Sampling options:
    !temperature [float]        !presence_penalty [float]
    !frequency_penalty [float]  !top_p [non-negative int]

With no value the option is cleared. A value that does not parse is
ignored and the previous setting stays in place.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Union

from agent.conversation import ConversationContext
from dorothy_constants import DEFAULT_COMMAND_PREFIX

logger = logging.getLogger(__name__)


def _reject_underscores(raw: str) -> str:
    # int()/float() accept digit separators like "1_0"
    if "_" in raw:
        raise ValueError(f"invalid number: {raw!r}")
    return raw


def _parse_float(raw: str) -> float:
    return float(_reject_underscores(raw))


def _parse_non_negative_int(raw: str) -> int:
    value = int(_reject_underscores(raw))
    if value < 0:
        raise ValueError(f"negative value: {value}")
    return value


# Checked in this order; matching is by literal prefix
OPTION_PARSERS: Dict[str, Callable[[str], Union[int, float]]] = {
    "temperature": _parse_float,
    "frequency_penalty": _parse_float,
    "presence_penalty": _parse_float,
    "top_p": _parse_non_negative_int,
}

OPTION_HELP = {
    "temperature": (
        "Controls randomness. Lowering results in less random completions. As the "
        "temperature approaches zero, the model will become more deterministic and "
        "repetitive."
    ),
    "top_p": (
        "Controls diversity via nucleus sampling. 0.5 means half of all "
        "likelihood-weighted options are considered."
    ),
    "frequency_penalty": (
        "How much to penalize new tokens based on their existing frequency in the "
        "text so far. Decreases the model's likelihood to repeat the same line verbatim."
    ),
    "presence_penalty": (
        "How much to penalize new tokens based on whether they appear in the text so "
        "far. Increases the model's likelihood to talk about new topics."
    ),
}

CHATLOG_CLEARED_MESSAGE = "[Chatlog Cleared]"


# ---------------------------------------------------------------------------
# Command types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SetOption:
    option: str
    value: Union[int, float]


@dataclass(frozen=True)
class ClearOption:
    option: str


@dataclass(frozen=True)
class InvalidOption:
    option: str
    raw: str


@dataclass(frozen=True)
class ResetContext:
    pass


@dataclass(frozen=True)
class ShowLog:
    pass


@dataclass(frozen=True)
class SetPreamble:
    text: str


@dataclass(frozen=True)
class ShowInfo:
    pass


@dataclass(frozen=True)
class UnknownCommand:
    text: str


Command = Union[
    SetOption, ClearOption, InvalidOption, ResetContext,
    ShowLog, SetPreamble, ShowInfo, UnknownCommand,
]


def parse_command(text: str, prefix: str = DEFAULT_COMMAND_PREFIX) -> Optional[Command]:
    """Parse a command line. Returns None when ``text`` is not a command at all."""
    text = text.strip()
    if not prefix or not text.startswith(prefix):
        return None
    body = text[len(prefix):]

    for option, parser in OPTION_PARSERS.items():
        if body.startswith(option):
            raw = body[len(option):].strip()
            if not raw:
                return ClearOption(option)
            try:
                return SetOption(option, parser(raw))
            except ValueError:
                return InvalidOption(option, raw)

    if body.startswith("reset"):
        return ResetContext()
    if body.startswith("log"):
        return ShowLog()
    if body.startswith("context="):
        return SetPreamble(body[len("context="):])
    if body.startswith("info"):
        return ShowInfo()
    return UnknownCommand(text)


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------

def format_info(context: ConversationContext) -> str:
    config = context.config
    lines = []
    for option in ("temperature", "top_p", "frequency_penalty", "presence_penalty"):
        lines.append(f"{option} ({config.describe(option)}): {OPTION_HELP[option]}")
    lines.append('You can set any property like this: "!top_p 2" or "!temperature 0.6"')
    lines.append(f"The current context is:\n{context.preamble}")
    lines.append(f"{context.token_estimate} tokens so far")
    return "```" + "\n\n".join(lines) + "```"


class CommandInterpreter:
    """Authorizes and executes operator commands against a conversation.

    Args:
        allowed_users: User IDs permitted to run commands.
        prefix: Character(s) that mark a line as a command.
    """

    def __init__(
        self,
        allowed_users: Iterable[str] = (),
        prefix: str = DEFAULT_COMMAND_PREFIX,
    ):
        self.allowed_users = frozenset(str(u) for u in allowed_users)
        self.prefix = prefix

    def is_command(self, text: str) -> bool:
        return bool(self.prefix) and text.strip().startswith(self.prefix)

    def is_authorized(self, user_id: str) -> bool:
        return str(user_id) in self.allowed_users

    async def execute(
        self, command: Command, context: ConversationContext, agent_name: str
    ) -> Optional[str]:
        """Apply ``command`` and return the reply text, or None for silent commands."""
        if isinstance(command, SetOption):
            context.config.set(command.option, command.value)
            logger.info("Set %s to %s", command.option, command.value)
            return None
        if isinstance(command, ClearOption):
            context.config.clear(command.option)
            logger.info("Cleared %s", command.option)
            return None
        if isinstance(command, InvalidOption):
            logger.debug("Ignoring unparsable value %r for %s", command.raw, command.option)
            return None
        if isinstance(command, ResetContext):
            await context.reset()
            return CHATLOG_CLEARED_MESSAGE
        if isinstance(command, ShowLog):
            return f"```{await context.render(agent_name)}```"
        if isinstance(command, SetPreamble):
            await context.set_preamble(command.text)
            logger.info("Preamble updated")
            return f"Context set to:\n```{command.text}```"
        if isinstance(command, ShowInfo):
            return format_info(context)
        if isinstance(command, UnknownCommand):
            logger.debug("Ignoring unknown command %r", command.text)
            return None
        raise TypeError(f"Unhandled command type: {type(command).__name__}")

    async def handle(
        self,
        text: str,
        user_id: str,
        context: ConversationContext,
        agent_name: str,
    ) -> Optional[str]:
        """Parse and run ``text``. Commands from unauthorized users are swallowed."""
        command = parse_command(text, self.prefix)
        if command is None:
            return None
        if not self.is_authorized(user_id):
            logger.debug("Ignoring command from unauthorized user %s", user_id)
            return None
        logger.debug("Parsed command %r", command)
        return await self.execute(command, context, agent_name)
