"""Per-conversation chat context -- turn logs, token budget, prompt rendering.

A ConversationContext keeps two logs, one for human turns and one for agent
turns, and renders them alternately (human first) beneath a system preamble.
The running token estimate is kept under a fixed ceiling by dropping the
oldest half of each log whenever the next line would push it over.

Locking:
    Every mutation holds ``_lock`` for its whole duration. The preamble has
    its own ``_preamble_lock`` so a ``!context=`` write can race a render.
    Acquisition order is always context lock -> preamble lock; nothing takes
    the context lock while holding the preamble lock.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Set

from agent.token_estimator import estimate_tokens, estimate_turn_tokens
from dorothy_constants import DEFAULT_PREAMBLE, TOKEN_BUDGET_CEILING

logger = logging.getLogger(__name__)

PRIVATE_SPEAKER_LABEL = "Human"

# The agent's display name is only known at render time, so every agent turn
# is charged a single token for its label.
AGENT_LABEL_TOKENS = 1

# Stop sequences contributed by seen speaker names in group conversations
MAX_SPEAKER_STOP_TOKENS = 2


@dataclass
class HumanTurn:
    speaker_name: str
    text: str


@dataclass
class SamplingConfig:
    """Sampling parameters sent with every completion call.

    Each option is independently nullable; ``None`` means "let the provider
    use its own default" and is omitted from the request.
    """

    top_p: Optional[int] = 1
    temperature: Optional[float] = 0.9
    presence_penalty: Optional[float] = 0.6
    frequency_penalty: Optional[float] = 0.0

    @classmethod
    def option_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SamplingConfig":
        known = {name: data[name] for name in cls.option_names() if name in data}
        return cls(**known)

    def copy(self) -> "SamplingConfig":
        return SamplingConfig(**self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.option_names()}

    def set(self, option: str, value) -> None:
        if option not in self.option_names():
            raise KeyError(f"Unknown sampling option: {option}")
        setattr(self, option, value)

    def clear(self, option: str) -> None:
        self.set(option, None)

    def describe(self, option: str) -> str:
        value = getattr(self, option)
        return "Not set" if value is None else str(value)


class ConversationContext:
    """Mutable chat state for one conversation (a channel or a DM).

    Args:
        is_private: Direct-message conversation. Humans are rendered as
            "Human" and the stop tokens use that label.
        preamble: System framing text placed before the turns.
        config: Initial sampling configuration.
        token_ceiling: Budget, in estimated tokens, that triggers a purge.
    """

    def __init__(
        self,
        is_private: bool,
        *,
        preamble: str = DEFAULT_PREAMBLE,
        config: Optional[SamplingConfig] = None,
        token_ceiling: int = TOKEN_BUDGET_CEILING,
    ):
        self._is_private = is_private
        self._preamble = preamble
        self._token_ceiling = token_ceiling
        self.human_turns: List[HumanTurn] = []
        self.agent_turns: List[str] = []
        self.seen_speaker_names: Set[str] = set()
        self.config = config if config is not None else SamplingConfig()
        self._lock = asyncio.Lock()
        self._preamble_lock = asyncio.Lock()
        self.token_estimate = self._count_tokens(preamble)

    # -- Properties -----------------------------------------------------------

    @property
    def is_private(self) -> bool:
        return self._is_private

    @property
    def preamble(self) -> str:
        return self._preamble

    @property
    def token_ceiling(self) -> int:
        return self._token_ceiling

    # -- Token accounting -----------------------------------------------------

    def _human_turn_cost(self, speaker_name: str, text: str) -> int:
        label = PRIVATE_SPEAKER_LABEL if self._is_private else speaker_name
        return estimate_turn_tokens(text, label)

    @staticmethod
    def _agent_turn_cost(text: str) -> int:
        return estimate_tokens(text) + AGENT_LABEL_TOKENS

    def _count_tokens(self, preamble: str) -> int:
        """Estimate the whole context from scratch."""
        total = estimate_tokens(preamble)
        for turn in self.human_turns:
            total += self._human_turn_cost(turn.speaker_name, turn.text)
        for text in self.agent_turns:
            total += self._agent_turn_cost(text)
        return total

    async def _recalculate_tokens(self) -> None:
        async with self._preamble_lock:
            preamble = self._preamble
        self.token_estimate = self._count_tokens(preamble)

    def _purge_half(self) -> None:
        """Drop the oldest half of each log, each by its own length."""
        del self.human_turns[: len(self.human_turns) // 2]
        del self.agent_turns[: len(self.agent_turns) // 2]

    async def _charge(self, cost: int) -> None:
        if cost + self.token_estimate > self._token_ceiling:
            before = (len(self.human_turns), len(self.agent_turns))
            self._purge_half()
            await self._recalculate_tokens()
            logger.debug(
                "Purged chat logs from %s to %s turns, %s tokens remain",
                before,
                (len(self.human_turns), len(self.agent_turns)),
                self.token_estimate,
            )
        self.token_estimate += cost

    # -- Mutations ------------------------------------------------------------

    async def append_human(self, speaker_name: str, text: str) -> None:
        async with self._lock:
            self.seen_speaker_names.add(speaker_name)
            await self._charge(self._human_turn_cost(speaker_name, text))
            self.human_turns.append(HumanTurn(speaker_name=speaker_name, text=text))

    async def append_agent(self, text: str) -> None:
        async with self._lock:
            await self._charge(self._agent_turn_cost(text))
            self.agent_turns.append(text)

    async def continue_last_agent(self, text: str) -> bool:
        """Concatenate ``text`` onto the latest agent turn.

        Returns False (and drops the text) when there is no agent turn yet.
        """
        async with self._lock:
            if not self.agent_turns:
                logger.error("Continuation with no previous agent turn, dropping %r", text)
                return False
            # Charge the growth of the merged turn; a word split across
            # rounds joins into one segment. A purge keeps the newest half,
            # so the last turn survives it.
            last = self.agent_turns[-1]
            merged = last + text
            await self._charge(self._agent_turn_cost(merged) - self._agent_turn_cost(last))
            self.agent_turns[-1] = merged
            return True

    async def reset(self) -> None:
        async with self._lock:
            self.human_turns.clear()
            self.agent_turns.clear()
            self.seen_speaker_names.clear()
            await self._recalculate_tokens()

    async def set_preamble(self, preamble: str) -> None:
        """Replace the preamble and start the conversation over."""
        async with self._preamble_lock:
            self._preamble = preamble
        await self.reset()

    # -- Rendering ------------------------------------------------------------

    async def render(self, agent_name: str) -> str:
        """Serialize the context into prompt text.

        The final agent line ends in a space instead of a newline so the
        provider continues that line rather than starting a new turn.
        """
        async with self._preamble_lock:
            parts = [self._preamble, "\n\n"]

        humans = list(self.human_turns)
        agents = list(self.agent_turns)
        human_index = agent_index = 0
        human_talking = True
        while human_index < len(humans) or agent_index < len(agents):
            if human_talking:
                if human_index < len(humans):
                    turn = humans[human_index]
                    human_index += 1
                    label = PRIVATE_SPEAKER_LABEL if self._is_private else turn.speaker_name
                    parts.append(f"{label}: {turn.text.strip()}\n")
            elif agent_index < len(agents):
                text = agents[agent_index]
                agent_index += 1
                exhausted = agent_index == len(agents) and human_index == len(humans)
                terminator = " " if exhausted else "\n"
                parts.append(f"{agent_name}: {text.strip()}{terminator}")
            human_talking = not human_talking
        return "".join(parts)

    def stop_tokens(self, agent_name: str) -> List[str]:
        tokens = ["\n", f"{agent_name}:"]
        if self._is_private:
            tokens.append(f"{PRIVATE_SPEAKER_LABEL}:")
        else:
            # Set order, so which two names win is not stable across runs.
            for name in itertools.islice(self.seen_speaker_names, MAX_SPEAKER_STOP_TOKENS):
                tokens.append(f"{name}:")
        return tokens
