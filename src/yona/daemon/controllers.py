"""Controllers for daemon CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from yona.config import Settings
from yona.daemon.client import DaemonClient
from yona.daemon.errors import DaemonError
from yona.daemon.protocol import Response
from yona.daemon.runtime import RuntimeFiles, resolve_connection_info
from yona.daemon.server import run_daemon

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

Emit = Callable[[str], None]


@dataclass(slots=True)
class OutputOptions:
    """Flags shared by every client command."""

    session: str = "default"
    as_json: bool = False


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for queuing a task."""

    name: str
    duration_ms: int | None


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for status/stop with an optional task id."""

    task_id: str | None


@dataclass(slots=True)
class ChatMessageCommand:
    """CLI input for sending a chat message."""

    text: str
    model: str | None


class DaemonCliController:
    """Turns CLI commands into daemon requests and renders the replies."""

    def __init__(self, settings_factory: Callable[[], Settings] = Settings.from_env) -> None:
        self._settings_factory = settings_factory

    def ping(self, options: OutputOptions) -> list[str]:
        response = self._request(options, {"action": "ping"})
        return self._render(options, response, lambda data: [str(data["message"])])

    def run_task(self, options: OutputOptions, command: RunTaskCommand) -> list[str]:
        payload: dict[str, Any] = {
            "action": "run",
            "session": options.session,
            "name": command.name,
        }
        if command.duration_ms is not None:
            payload["durationMs"] = command.duration_ms
        response = self._request(options, payload)
        return self._render(
            options,
            response,
            lambda data: [f"Task queued: {_format_task(data['task'])}"],
        )

    def status(self, options: OutputOptions, command: TaskRefCommand) -> list[str]:
        payload: dict[str, Any] = {"action": "status", "session": options.session}
        if command.task_id:
            payload["taskId"] = command.task_id
        response = self._request(options, payload)
        return self._render(options, response, _render_tasks)

    def stop(self, options: OutputOptions, command: TaskRefCommand) -> list[str]:
        payload: dict[str, Any] = {"action": "stop", "session": options.session}
        if command.task_id:
            payload["taskId"] = command.task_id
        response = self._request(options, payload)
        return self._render(options, response, _render_tasks)

    def session_list(self, options: OutputOptions) -> list[str]:
        response = self._request(options, {"action": "session_list"})

        def _lines(data: dict[str, Any]) -> list[str]:
            sessions = data["sessions"]
            if not sessions:
                return ["No sessions."]
            return [
                f"{item['name']}  tasks={item['taskCount']}  "
                f"created={_format_timestamp(item['createdAt'])}"
                for item in sessions
            ]

        return self._render(options, response, _lines)

    def chat(self, options: OutputOptions, command: ChatMessageCommand, emit: Emit) -> None:
        """Send a chat message and stream the assistant reply until its final event."""

        settings = self._settings()
        client = DaemonClient(settings.transport)

        async def _chat() -> None:
            await client.ensure_daemon()
            async with client.subscription() as events:
                payload: dict[str, Any] = {
                    "action": "chat",
                    "session": options.session,
                    "text": command.text,
                }
                if command.model:
                    payload["model"] = command.model
                response = await client.request(payload)
                if not response.success:
                    raise DaemonError(response.error or "chat failed")
                message_id = response.data["messageId"]
                async for event in events:
                    if event.get("type") != "chat" or event.get("messageId") != message_id:
                        continue
                    if options.as_json:
                        emit(json.dumps(event))
                    elif event.get("role") == "assistant" and event.get("isFinal"):
                        emit(str(event.get("text", "")))
                    if event.get("role") == "assistant" and event.get("isFinal"):
                        return

        asyncio.run(_chat())

    def watch(self, options: OutputOptions, emit: Emit, max_events: int | None = None) -> None:
        """Print every event pushed by the daemon."""

        settings = self._settings()
        client = DaemonClient(settings.transport)

        async def _watch() -> None:
            await client.ensure_daemon()
            seen = 0
            async with client.subscription() as events:
                async for event in events:
                    emit(json.dumps(event) if options.as_json else _format_event(event))
                    seen += 1
                    if max_events is not None and seen >= max_events:
                        return

        asyncio.run(_watch())

    def run_daemon(self) -> None:
        """Run the daemon in the foreground until a termination signal."""

        settings = self._settings()
        configure_logging(settings)
        asyncio.run(run_daemon(settings))

    def daemon_status(self) -> list[str]:
        settings = self._settings()
        files = RuntimeFiles(settings.transport)
        if not files.is_daemon_running():
            return ["Daemon is not running."]
        client = DaemonClient(settings.transport)
        ready = asyncio.run(client.is_ready())
        return [
            f"Daemon running: pid={files.read_pid()} "
            f"address={client.connection_info().describe()} "
            f"ready={'yes' if ready else 'no'}",
        ]

    def stop_daemon(self) -> list[str]:
        settings = self._settings()
        files = RuntimeFiles(settings.transport)
        if not files.is_daemon_running():
            return ["Daemon is not running."]
        pid = files.read_pid()
        if pid is None:
            return ["Daemon is not running."]
        os.kill(pid, signal.SIGTERM)
        return [f"Stop signal sent to daemon (pid {pid})."]

    def _settings(self) -> Settings:
        settings = self._settings_factory()
        settings.validate()
        return settings

    def _request(self, options: OutputOptions, payload: dict[str, Any]) -> Response:
        settings = self._settings()
        client = DaemonClient(settings.transport)

        async def _send() -> Response:
            await client.ensure_daemon()
            return await client.request(payload)

        return asyncio.run(_send())

    def _render(
        self,
        options: OutputOptions,
        response: Response,
        render: Callable[[dict[str, Any]], list[str]],
    ) -> list[str]:
        if options.as_json:
            return [json.dumps(response.to_dict())]
        if not response.success:
            raise DaemonError(response.error or "request failed")
        return render(response.data)


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.logging.log_file is not None:
        settings.logging.log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.logging.log_file, encoding="utf-8"))
    logging.basicConfig(
        level=settings.logging.level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    logging.getLogger(__name__).info(
        "Logging configured (level=%s, address=%s)",
        settings.logging.level,
        resolve_connection_info(settings.transport).describe(),
    )


def _render_tasks(data: dict[str, Any]) -> list[str]:
    if "task" in data:
        return [_format_task(data["task"])]
    tasks = data.get("tasks", [])
    if not tasks:
        return [f"No tasks in session {data['session']}."]
    return [_format_task(task) for task in tasks]


def _format_task(task: dict[str, Any]) -> str:
    line = f"{task['id']}  {task['status']:<9}  {task['name']}"
    if task.get("error") and task["status"] != "cancelled":
        line += f"  error={task['error']}"
    return line


def _format_event(event: dict[str, Any]) -> str:
    stamp = _format_timestamp(event.get("timestamp", 0))
    kind = event.get("type")
    if kind == "task":
        return f"{stamp} [{event['session']}] task {event['taskId']} {event['name']}: {event['status']}"
    if kind == "session":
        return f"{stamp} [{event['session']}] session created"
    if kind == "chat":
        body = event.get("delta") if event.get("delta") is not None else event.get("text", "")
        marker = " (final)" if event.get("isFinal") else ""
        return f"{stamp} [{event['session']}] {event['role']}{marker}: {body}"
    return f"{stamp} {json.dumps(event)}"


def _format_timestamp(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")
