"""Chat provider backed by the OpenAI Responses streaming API."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI

from yona.daemon.chat.base import ChatChunk
from yona.daemon.errors import ChatProviderError


class OpenAIChatProvider:
    """Streams replies and threads them through ``previous_response_id``."""

    def __init__(self, *, api_key: str | None) -> None:
        self.api_key = api_key
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if not self.api_key:
            raise ChatProviderError("OPENAI_API_KEY is not set")
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def stream(
        self,
        *,
        text: str,
        model: str,
        previous_response_id: str | None,
    ) -> AsyncIterator[ChatChunk]:
        client = self._get_client()
        request: dict[str, Any] = {"model": model, "input": text, "stream": True}
        if previous_response_id:
            request["previous_response_id"] = previous_response_id

        stream = await client.responses.create(**request)
        async for event in stream:
            if event.type == "response.created":
                yield ChatChunk(response_id=event.response.id)
            elif event.type == "response.output_text.delta":
                yield ChatChunk(delta=event.delta)
