"""Scripted LLM provider for engine and editor tests."""

import asyncio
from typing import Any

from app.core.errors import ProviderError
from app.core.llm import Completion, ProviderChunk

TWO_SECTION_REPORT = [
    "## Revenue\nRevenue grew 12% year over year, ",
    "driven by subscriptions.\n",
    "## Outlook\nManagement expects steady growth ",
    "through the fourth quarter.\n",
]


class ScriptedProvider:
    """
    Replays fixed text fragments as a provider stream.

    Args:
        chunks: Fragments yielded by ``stream``
        completion: Text returned by ``complete`` (entity extraction)
        fail_after: Raise ProviderError after this many fragments
        hold_after: Block after this many fragments until ``release`` is set
        usage: (input, output) tokens reported as a final usage chunk
    """

    name = "scripted"

    def __init__(
        self,
        chunks: list[str] | None = None,
        *,
        completion: str | Exception = "[]",
        fail_after: int | None = None,
        hold_after: int | None = None,
        usage: tuple[int, int] | None = (120, 80),
    ):
        self.chunks = list(TWO_SECTION_REPORT if chunks is None else chunks)
        self.completion = completion
        self.fail_after = fail_after
        self.hold_after = hold_after
        self.usage = usage
        self.held = asyncio.Event()
        self.release = asyncio.Event()
        self.stream_calls: list[dict[str, Any]] = []
        self.complete_calls: list[dict[str, Any]] = []

    async def stream(self, **kwargs):
        self.stream_calls.append(kwargs)
        for index, text in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise ProviderError("Scripted stream failure")
            if self.hold_after is not None and index == self.hold_after:
                self.held.set()
                await self.release.wait()
            await asyncio.sleep(0)
            yield ProviderChunk(text=text)
        if self.usage is not None:
            yield ProviderChunk(input_tokens=self.usage[0], output_tokens=self.usage[1])

    async def complete(self, **kwargs) -> Completion:
        self.complete_calls.append(kwargs)
        if isinstance(self.completion, Exception):
            raise self.completion
        return Completion(text=self.completion, input_tokens=10, output_tokens=10)
