"""Error taxonomy for the daemon core.

Every error raised by a handler is converted into a failure Response (or, for
the chat provider, a final error-bearing event) at the connection boundary.
"""

from __future__ import annotations


class DaemonError(RuntimeError):
    """Base class for errors reported back to clients by message."""


class MessageDecodeError(DaemonError):
    """Message bytes are not a UTF-8 JSON object."""


class CommandValidationError(DaemonError):
    """Decoded message does not match any known command shape."""

    def __init__(self, message: str, *, command_id: str | None = None) -> None:
        super().__init__(message)
        self.command_id = command_id


class TaskNotFoundError(DaemonError):
    """Task id is unknown to the session executor."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class ChatInProgressError(DaemonError):
    """A chat reply is still streaming for the session."""

    def __init__(self) -> None:
        super().__init__("Chat already in progress for this session")


class ChatProviderError(DaemonError):
    """External chat provider call failed or is not configured."""


class TaskCancelledError(Exception):
    """Raised by a unit of work once it observes its cancellation token."""


class DaemonUnavailableError(DaemonError):
    """Client could not reach (or start) the daemon."""
