"""Offline chat provider that echoes the prompt back word by word."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from uuid import uuid4

from yona.daemon.chat.base import ChatChunk


class EchoChatProvider:
    """Deterministic provider for tests and local runs without an API key."""

    def __init__(self, *, delay_seconds: float = 0.0, prefix: str = "echo: ") -> None:
        self.delay_seconds = delay_seconds
        self.prefix = prefix

    async def stream(
        self,
        *,
        text: str,
        model: str,
        previous_response_id: str | None,
    ) -> AsyncIterator[ChatChunk]:
        yield ChatChunk(response_id=f"echo-{uuid4()}")
        words = (self.prefix + text).split(" ")
        for index, word in enumerate(words):
            await asyncio.sleep(self.delay_seconds)
            yield ChatChunk(delta=word if index == len(words) - 1 else f"{word} ")
