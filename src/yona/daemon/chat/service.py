"""Chat conversations: one in-flight reply per session, streamed as events."""

from __future__ import annotations

import asyncio
import logging

from yona.daemon.chat.base import ChatProvider
from yona.daemon.errors import ChatInProgressError
from yona.daemon.models import ChatEvent, now_ms
from yona.daemon.sessions import Session, SessionRegistry

logger = logging.getLogger(__name__)


class ChatService:
    """Starts provider calls in the background and publishes chat events.

    For each accepted message: one final ``user`` event, zero or more
    ``assistant`` delta events, then exactly one final ``assistant`` event
    (carrying ``Error: ...`` text when the provider fails).
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        provider: ChatProvider,
        default_model: str,
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.default_model = default_model
        self._replies: set[asyncio.Task[None]] = set()

    def start(
        self,
        *,
        session_name: str,
        message_id: str,
        text: str,
        model: str | None = None,
    ) -> dict[str, str]:
        session = self.registry.get_or_create(session_name)
        if session.chat.in_flight:
            raise ChatInProgressError()

        self._emit(session, message_id, role="user", text=text, is_final=True)
        session.chat.in_flight = True
        reply = asyncio.get_running_loop().create_task(
            self._stream_reply(session, message_id, text, model or self.default_model),
            name=f"yona-chat-{session.name}-{message_id}",
        )
        self._replies.add(reply)
        reply.add_done_callback(self._replies.discard)
        return {"messageId": message_id, "session": session.name}

    async def aclose(self) -> None:
        for reply in list(self._replies):
            reply.cancel()
        if self._replies:
            await asyncio.gather(*self._replies, return_exceptions=True)

    async def _stream_reply(self, session: Session, message_id: str, text: str, model: str) -> None:
        parts: list[str] = []
        response_id: str | None = None
        try:
            async for chunk in self.provider.stream(
                text=text,
                model=model,
                previous_response_id=session.chat.previous_response_id,
            ):
                if chunk.response_id:
                    response_id = chunk.response_id
                if chunk.delta:
                    parts.append(chunk.delta)
                    self._emit(session, message_id, role="assistant", delta=chunk.delta)
            if response_id:
                session.chat.previous_response_id = response_id
            self._emit(session, message_id, role="assistant", text="".join(parts), is_final=True)
        except asyncio.CancelledError:
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Chat reply failed for session %s: %s", session.name, error)
            self._emit(
                session,
                message_id,
                role="assistant",
                text=f"Error: {error}",
                is_final=True,
            )
        finally:
            session.chat.in_flight = False

    def _emit(
        self,
        session: Session,
        message_id: str,
        *,
        role: str,
        delta: str | None = None,
        text: str | None = None,
        is_final: bool | None = None,
    ) -> None:
        self.registry.publish(
            ChatEvent(
                session=session.name,
                message_id=message_id,
                role=role,
                timestamp=now_ms(),
                delta=delta,
                text=text,
                is_final=is_final,
            ),
        )
