"""Session registry: one isolated executor and chat state per session name."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from yona.daemon.executor import TaskExecutor, TaskWork
from yona.daemon.models import Event, SessionEvent, TaskEvent, now_ms

logger = logging.getLogger(__name__)

EventListener = Callable[[Event], None]


@dataclass(slots=True)
class ChatState:
    """Conversation continuity for one session."""

    in_flight: bool = False
    previous_response_id: str | None = None


@dataclass(slots=True)
class Session:
    """Named scope owning one task executor and one chat conversation."""

    name: str
    created_at: int
    executor: TaskExecutor
    chat: ChatState = field(default_factory=ChatState)

    def to_summary(self) -> dict[str, object]:
        return {
            "name": self.name,
            "createdAt": self.created_at,
            "taskCount": len(self.executor.list()),
        }


class SessionRegistry:
    """Creates sessions lazily and never deletes them.

    Every event raised by a session's executor, plus session creation and chat
    events published through ``publish``, is forwarded to registered listeners.
    """

    def __init__(
        self,
        *,
        work: TaskWork | None = None,
        default_duration_ms: int = 1000,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._listeners: list[EventListener] = []
        self._work = work
        self._default_duration_ms = default_duration_ms

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def get(self, name: str) -> Session | None:
        return self._sessions.get(name)

    def get_or_create(self, name: str) -> Session:
        existing = self._sessions.get(name)
        if existing is not None:
            return existing

        executor = TaskExecutor(
            name,
            work=self._work,
            default_duration_ms=self._default_duration_ms,
        )
        executor.add_listener(self._forward_task_event)
        session = Session(name=name, created_at=now_ms(), executor=executor)
        self._sessions[name] = session
        logger.info("Session created: %s", name)
        self.publish(SessionEvent(session=name, timestamp=session.created_at))
        return session

    def list(self) -> list[Session]:
        return list(self._sessions.values())

    def publish(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s event", type(event).__name__)

    async def aclose(self) -> None:
        for session in self._sessions.values():
            await session.executor.aclose()

    def _forward_task_event(self, event: TaskEvent) -> None:
        self.publish(event)
