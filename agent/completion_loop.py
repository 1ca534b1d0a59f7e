"""Multi-round completion loop.

The provider caps new tokens per call, so a reply is stitched together from
several calls. The first round primes the prompt with ``"<agent>:"`` and
opens a new agent turn; every later round re-renders the context (whose last
agent line now ends in a space) and extends that same turn. The loop ends as
soon as the provider reports that it hit a stop token, or returns no choices.

Any CompletionError aborts the loop. Turns appended by earlier rounds stay
in the context; no partial reply is returned.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from agent.completion_client import (
    CompletionClient,
    CompletionRequest,
    CompletionTimeoutError,
    FinishReason,
)
from agent.conversation import ConversationContext
from dorothy_constants import (
    CHOICES_PER_CALL,
    DEFAULT_COMPLETION_TIMEOUT,
    DEFAULT_MAX_ROUNDS,
    MAX_NEW_TOKENS_PER_CALL,
)

logger = logging.getLogger(__name__)


class LoopState(Enum):
    FIRST_ROUND = "first_round"
    CONTINUATION_ROUND = "continuation_round"


async def _build_request(
    context: ConversationContext,
    agent_name: str,
    state: LoopState,
    max_tokens: int,
) -> CompletionRequest:
    prompt = await context.render(agent_name)
    if state is LoopState.FIRST_ROUND:
        prompt = f"{prompt}{agent_name}:"
    config = context.config
    return CompletionRequest(
        prompt=prompt,
        max_tokens=max_tokens,
        temperature=config.temperature,
        top_p=config.top_p,
        presence_penalty=config.presence_penalty,
        frequency_penalty=config.frequency_penalty,
        n=CHOICES_PER_CALL,
        stop=context.stop_tokens(agent_name),
    )


async def generate_response(
    client: CompletionClient,
    context: ConversationContext,
    agent_name: str,
    *,
    max_tokens: int = MAX_NEW_TOKENS_PER_CALL,
    timeout: Optional[float] = DEFAULT_COMPLETION_TIMEOUT,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
) -> str:
    """Drive completion calls until the agent's turn is finished.

    Args:
        client: Completion service client.
        context: Conversation to render and append to.
        agent_name: Display name the agent speaks as.
        max_tokens: New-token cap for each call.
        timeout: Seconds allowed per call; None disables the bound.
        max_rounds: Safety cap on calls for one reply.

    Returns:
        The concatenated reply text.

    Raises:
        CompletionError: A call failed or timed out.
    """
    state = LoopState.FIRST_ROUND
    reply_parts = []

    for round_number in range(1, max_rounds + 1):
        request = await _build_request(context, agent_name, state, max_tokens)
        logger.debug("Completion round %d prompt: %r", round_number, request.prompt)
        logger.debug("Completion round %d stop tokens: %r", round_number, request.stop)

        try:
            result = await asyncio.wait_for(client.get_completion(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CompletionTimeoutError(
                f"Completion round {round_number} exceeded {timeout}s"
            ) from e

        if not result.choices:
            logger.debug("Completion round %d returned no choices", round_number)
            break

        choice = result.choices[0]
        text = choice.text.replace("\n", " ")
        if state is LoopState.FIRST_ROUND:
            await context.append_agent(text)
            state = LoopState.CONTINUATION_ROUND
        else:
            await context.continue_last_agent(text)
        reply_parts.append(text)

        if choice.finish_reason is FinishReason.STOP:
            break
    else:
        logger.warning("Reply still unfinished after %d completion rounds", max_rounds)

    return "".join(reply_parts)
