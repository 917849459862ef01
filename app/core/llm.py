"""LLM provider clients and response parsing helpers.

Providers expose the same two calls: ``stream`` yields text fragments as
they arrive (usage totals come as a final text-less chunk), ``complete``
returns one whole response. Provider SDK failures surface as
``ProviderError``.
"""

import json
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from app.core.config import Settings
from app.core.errors import ParseError, ProviderError, ValidationError
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProviderChunk:
    """One streamed increment. Usage-only chunks carry empty text."""

    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class Completion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class TextStreamProvider(Protocol):
    name: str

    def stream(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[ProviderChunk]: ...

    async def complete(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> Completion: ...


class AnthropicProvider:
    """Claude models through ``AsyncAnthropic``."""

    name = "anthropic"

    def __init__(self, api_key: str | None = None, client: AsyncAnthropic | None = None):
        self._client = client or AsyncAnthropic(api_key=api_key)

    async def stream(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[ProviderChunk]:
        try:
            async with self._client.messages.stream(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            ) as stream:
                async for event in stream:
                    if getattr(event, "type", None) == "content_block_delta":
                        text = getattr(event.delta, "text", None)
                        if text:
                            yield ProviderChunk(text=text)

                final_message = await stream.get_final_message()
                usage = getattr(final_message, "usage", None)
                if usage is not None:
                    yield ProviderChunk(
                        input_tokens=getattr(usage, "input_tokens", 0) or 0,
                        output_tokens=getattr(usage, "output_tokens", 0) or 0,
                    )
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic stream failed: {e}") from e

    async def complete(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic request failed: {e}") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )


class OpenAIProvider:
    """GPT models through ``AsyncOpenAI`` chat completions."""

    name = "openai"

    def __init__(self, api_key: str | None = None, client: AsyncOpenAI | None = None):
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def stream(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[ProviderChunk]:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in response:
                if chunk.choices:
                    text = chunk.choices[0].delta.content
                    if text:
                        yield ProviderChunk(text=text)
                if getattr(chunk, "usage", None):
                    yield ProviderChunk(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI stream failed: {e}") from e

    async def complete(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
            )
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

        usage = response.usage
        return Completion(
            text=response.choices[0].message.content or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


class ProviderRouter:
    """Maps a model name to the provider that serves it, by name prefix."""

    def __init__(self, providers: dict[str, TextStreamProvider]):
        # prefix -> provider
        self._providers = providers

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRouter":
        anthropic_provider = AnthropicProvider(api_key=settings.ANTHROPIC_API_KEY or None)
        providers: dict[str, TextStreamProvider] = {"claude": anthropic_provider}
        if settings.OPENAI_API_KEY:
            openai_provider = OpenAIProvider(api_key=settings.OPENAI_API_KEY)
            providers.update({"gpt-": openai_provider, "o1": openai_provider})
        return cls(providers)

    def for_model(self, model: str) -> TextStreamProvider:
        """
        Resolve the provider for a model.

        Raises:
            ValidationError: If no configured provider serves the model
        """
        for prefix, provider in self._providers.items():
            if model.startswith(prefix):
                return provider
        raise ValidationError(f"No provider configured for model '{model}'")


# =============================================================================
# Response parsing
# =============================================================================

_FENCE_RE = re.compile(r"^```[\w-]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def strip_llm_fences(raw_output: str) -> str:
    """Remove a code fence wrapping the whole output (```json, ```html, ```)."""
    cleaned = raw_output.strip()
    fence_match = _FENCE_RE.match(cleaned)
    if fence_match:
        return fence_match.group(1).strip()
    return cleaned


def extract_json_array(raw_output: str) -> list:
    """
    Pull the first-to-last bracketed JSON array out of a model response.

    Args:
        raw_output: Raw string from LLM response

    Returns:
        Parsed list

    Raises:
        ParseError: If no array is present or it does not parse
    """
    cleaned = strip_llm_fences(raw_output)
    match = _JSON_ARRAY_RE.search(cleaned)
    if not match:
        raise ParseError("No JSON array found in model output")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON array in model output: {e}") from e
    if not isinstance(parsed, list):
        raise ParseError("Model output is not a JSON array")
    return parsed
