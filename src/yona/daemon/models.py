"""Domain models for tasks, sessions, and pushed events."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""

    return int(time.time() * 1000)


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


@dataclass(slots=True)
class TaskInfo:
    """One unit of queued or executing work owned by a session executor."""

    id: str
    name: str
    status: TaskStatus
    created_at: int
    duration_ms: int | float
    started_at: int | None = None
    ended_at: int | None = None
    result: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "createdAt": self.created_at,
            "durationMs": self.duration_ms,
        }
        if self.started_at is not None:
            payload["startedAt"] = self.started_at
        if self.ended_at is not None:
            payload["endedAt"] = self.ended_at
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True, slots=True)
class TaskEvent:
    """Task status transition."""

    session: str
    task_id: str
    name: str
    status: TaskStatus
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "task",
            "session": self.session,
            "taskId": self.task_id,
            "name": self.name,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class SessionEvent:
    """A session was created."""

    session: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "session", "session": self.session, "timestamp": self.timestamp}


@dataclass(frozen=True, slots=True)
class ChatEvent:
    """User message, assistant delta, or final assistant message."""

    session: str
    message_id: str
    role: str
    timestamp: int
    delta: str | None = None
    text: str | None = None
    is_final: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "chat",
            "session": self.session,
            "messageId": self.message_id,
            "role": self.role,
        }
        if self.delta is not None:
            payload["delta"] = self.delta
        if self.text is not None:
            payload["text"] = self.text
        if self.is_final is not None:
            payload["isFinal"] = self.is_final
        payload["timestamp"] = self.timestamp
        return payload


Event = TaskEvent | SessionEvent | ChatEvent
