"""Client for an OpenAI-compatible text completions endpoint.

Wraps ``AsyncOpenAI.completions.create`` (the legacy prompt-in, text-out
API, not chat completions) behind a small typed surface:

    request = CompletionRequest(prompt="...", max_tokens=50, stop=["\\n"])
    result = await client.get_completion(request)
    result.choices[0].text, result.choices[0].finish_reason

Every transport, HTTP status or decoding problem is raised as
CompletionError so callers have a single failure type to handle. The client
does not retry unless ``max_retries`` is configured.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from openai import APIError, APITimeoutError, AsyncOpenAI
from pydantic import BaseModel, Field

from dorothy_constants import (
    DEFAULT_COMPLETION_MODEL,
    DEFAULT_COMPLETION_TIMEOUT,
    MAX_NEW_TOKENS_PER_CALL,
    OPENAI_BASE_URL,
)

logger = logging.getLogger(__name__)


class CompletionError(Exception):
    """Raised when a completion call fails in transport or decoding."""
    pass


class CompletionTimeoutError(CompletionError):
    """Raised when a completion call exceeds its time budget."""
    pass


class FinishReason(str, Enum):
    LENGTH = "length"
    STOP = "stop"

    @classmethod
    def parse(cls, value: Optional[str]) -> "FinishReason":
        # A missing reason means the provider cut the text short
        if value is None:
            return cls.LENGTH
        try:
            return cls(value)
        except ValueError:
            raise CompletionError(f"Unexpected finish reason: {value!r}") from None


class CompletionRequest(BaseModel):
    """Body of a single completions call. ``None`` fields are not sent."""

    prompt: str
    max_tokens: int = Field(default=MAX_NEW_TOKENS_PER_CALL, ge=1)
    temperature: Optional[float] = None
    top_p: Optional[int] = Field(default=None, ge=0)
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    n: Optional[int] = Field(default=None, ge=1, description="Choices per call.")
    stop: Optional[List[str]] = None

    def to_api_kwargs(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass
class CompletionChoice:
    text: str
    finish_reason: FinishReason


@dataclass
class CompletionResult:
    choices: List[CompletionChoice] = field(default_factory=list)


def _normalize_api_key(api_key: str) -> str:
    """Accept keys pasted with their "Bearer " prefix; the SDK adds its own."""
    api_key = (api_key or "").strip()
    if api_key.lower().startswith("bearer "):
        return api_key[len("bearer "):].strip()
    return api_key


class CompletionClient:
    """Async completions client bound to one model.

    Args:
        api_key: Provider API key (with or without a "Bearer " prefix).
        base_url: OpenAI-compatible API root.
        model: Model used for every call.
        timeout: Per-request HTTP timeout in seconds.
        max_retries: Retries performed by the SDK itself (0 = none).
        client: Pre-built AsyncOpenAI instance, mainly for tests.
    """

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = OPENAI_BASE_URL,
        model: str = DEFAULT_COMPLETION_MODEL,
        timeout: float = DEFAULT_COMPLETION_TIMEOUT,
        max_retries: int = 0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        if client is None:
            client = AsyncOpenAI(
                api_key=_normalize_api_key(api_key),
                base_url=base_url,
                timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
                max_retries=max_retries,
            )
        self._client = client

    async def get_completion(self, request: CompletionRequest) -> CompletionResult:
        kwargs = request.to_api_kwargs()
        try:
            response = await self._client.completions.create(model=self.model, **kwargs)
        except APITimeoutError as e:
            raise CompletionTimeoutError(f"Completion request timed out: {e}") from e
        except APIError as e:
            raise CompletionError(f"Completion request failed: {e}") from e
        return self._parse_response(response)

    @staticmethod
    def _parse_response(response: Any) -> CompletionResult:
        raw_choices = getattr(response, "choices", None)
        if raw_choices is None:
            raise CompletionError("Completion response has no 'choices' field")
        choices = []
        for raw in raw_choices:
            choices.append(
                CompletionChoice(
                    text=getattr(raw, "text", None) or "",
                    finish_reason=FinishReason.parse(getattr(raw, "finish_reason", None)),
                )
            )
        return CompletionResult(choices=choices)

    async def close(self) -> None:
        await self._client.close()
