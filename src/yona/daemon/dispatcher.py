"""Routes validated commands to handlers and wraps outcomes in Responses."""

from __future__ import annotations

import logging
from typing import Any, assert_never

from yona.daemon.chat import ChatService
from yona.daemon.errors import DaemonError, TaskNotFoundError
from yona.daemon.protocol import (
    ChatCommand,
    Command,
    PingCommand,
    Response,
    RunCommand,
    SessionListCommand,
    StatusCommand,
    StopCommand,
    SubscribeCommand,
    error_response,
    success_response,
)
from yona.daemon.sessions import SessionRegistry

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """Reads and mutates the session registry on behalf of clients.

    Handlers never suspend: every effect of a command (including events it
    triggers) happens before its Response is produced.
    """

    def __init__(self, *, registry: SessionRegistry, chat: ChatService) -> None:
        self.registry = registry
        self.chat = chat

    def handle(self, command: Command) -> Response:
        """Dispatch and convert any handler error into a failure Response."""

        try:
            return success_response(command.id, self.dispatch(command))
        except DaemonError as error:
            return error_response(command.id, str(error))
        except Exception as error:
            logger.exception("Unexpected error handling %s command %s", command.action, command.id)
            return error_response(command.id, str(error) or type(error).__name__)

    def dispatch(self, command: Command) -> dict[str, Any]:
        match command:
            case PingCommand():
                return {"message": "pong"}
            case RunCommand():
                return self._run(command)
            case StatusCommand():
                return self._status(command)
            case StopCommand():
                return self._stop(command)
            case SessionListCommand():
                return {"sessions": [session.to_summary() for session in self.registry.list()]}
            case ChatCommand():
                return self.chat.start(
                    session_name=command.session,
                    message_id=command.id,
                    text=command.text,
                    model=command.model,
                )
            case SubscribeCommand():
                # Promotion into the subscriber set is done by the connection handler.
                return {"subscribed": True}
            case _:
                assert_never(command)

    def _run(self, command: RunCommand) -> dict[str, Any]:
        session = self.registry.get_or_create(command.session)
        task = session.executor.enqueue(command.name, command.duration_ms)
        return {"session": session.name, "task": task.to_dict()}

    def _status(self, command: StatusCommand) -> dict[str, Any]:
        session = self.registry.get_or_create(command.session)
        if command.task_id:
            task = session.executor.get(command.task_id)
            if task is None:
                raise TaskNotFoundError(command.task_id)
            return {"session": session.name, "task": task.to_dict()}
        return {
            "session": session.name,
            "tasks": [task.to_dict() for task in session.executor.list()],
        }

    def _stop(self, command: StopCommand) -> dict[str, Any]:
        session = self.registry.get_or_create(command.session)
        if command.task_id:
            task = session.executor.cancel(command.task_id)
            return {"session": session.name, "task": task.to_dict()}
        tasks = session.executor.cancel_all()
        return {"session": session.name, "tasks": [task.to_dict() for task in tasks]}
