"""Chat provider interface."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class ChatChunk:
    """One streamed piece of an assistant reply."""

    delta: str | None = None
    response_id: str | None = None


class ChatProvider(Protocol):
    """Protocol implemented by chat backends."""

    def stream(
        self,
        *,
        text: str,
        model: str,
        previous_response_id: str | None,
    ) -> AsyncIterator[ChatChunk]:
        """Stream the reply to ``text`` as chunks."""
        raise NotImplementedError
