"""Client side of the control socket: requests, event streams, auto-start."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import subprocess
import sys
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

from yona.config import TransportSettings
from yona.daemon.errors import DaemonUnavailableError
from yona.daemon.framing import decode_message, encode_message
from yona.daemon.protocol import Response
from yona.daemon.runtime import ConnectionInfo, RuntimeFiles, resolve_connection_info

logger = logging.getLogger(__name__)

READY_POLL_SECONDS = 0.1


def new_request_id() -> str:
    return str(uuid4())


class DaemonClient:
    """Talks to the daemon over one short-lived connection per request."""

    def __init__(self, settings: TransportSettings) -> None:
        self.settings = settings
        self.runtime_files = RuntimeFiles(settings)

    def connection_info(self) -> ConnectionInfo:
        info = resolve_connection_info(self.settings)
        if info.kind == "tcp" and not self.settings.port:
            # Derived or ephemeral (0) port: trust the port the daemon recorded.
            with contextlib.suppress(FileNotFoundError, ValueError):
                port = int(self.runtime_files.port_file.read_text(encoding="utf-8").strip())
                return ConnectionInfo(kind="tcp", host=info.host, port=port)
        return info

    async def request(self, payload: dict[str, Any], timeout: float | None = None) -> Response:
        """Send one command and wait for its delimited response."""

        payload = {"id": new_request_id(), **payload}
        timeout = timeout if timeout is not None else self.settings.request_timeout_seconds
        reader, writer = await self._open()
        try:
            writer.write(encode_message(payload, self.settings.delimiter))
            await writer.drain()
            line = await asyncio.wait_for(self._read_line(reader), timeout=timeout)
        except TimeoutError as error:
            raise DaemonUnavailableError(f"IPC timeout after {timeout}s") from error
        except asyncio.IncompleteReadError as error:
            raise DaemonUnavailableError("Daemon closed the connection") from error
        finally:
            await _close(writer)
        return Response.model_validate(decode_message(line))

    @contextlib.asynccontextmanager
    async def subscription(self) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        """Subscribe, await the acknowledgment, and yield the live event stream."""

        reader, writer = await self._open()
        try:
            writer.write(
                encode_message(
                    {"id": new_request_id(), "action": "subscribe"},
                    self.settings.delimiter,
                ),
            )
            await writer.drain()
            ack = Response.model_validate(
                decode_message(await self._read_line(reader)),
            )
            if not ack.success:
                raise DaemonUnavailableError(ack.error or "Subscription rejected")
            yield self._read_events(reader)
        finally:
            await _close(writer)

    async def _read_events(self, reader: asyncio.StreamReader) -> AsyncIterator[dict[str, Any]]:
        while True:
            try:
                line = await self._read_line(reader)
            except asyncio.IncompleteReadError:
                return
            yield decode_message(line)

    async def _read_line(self, reader: asyncio.StreamReader) -> bytes:
        """Read one delimited message, without its delimiter."""

        try:
            line = await reader.readuntil(self.settings.delimiter)
        except asyncio.LimitOverrunError as error:
            raise DaemonUnavailableError(
                f"Daemon message exceeds {self.settings.max_message_bytes} bytes "
                "(raise YONA_MAX_MESSAGE_BYTES)",
            ) from error
        return line[:-1]

    async def is_ready(self) -> bool:
        try:
            _, writer = await self._open()
        except (OSError, DaemonUnavailableError):
            return False
        await _close(writer)
        return True

    async def ensure_daemon(self) -> None:
        """Start a detached daemon unless one is already answering."""

        if self.runtime_files.is_daemon_running() and await self.is_ready():
            return

        command = self.daemon_command()
        logger.info("Starting daemon: %s", " ".join(command))
        spawn_kwargs: dict[str, Any] = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
        }
        if os.name == "posix":
            spawn_kwargs["start_new_session"] = True
        subprocess.Popen(command, **spawn_kwargs)  # noqa: S603

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.daemon_start_timeout_seconds
        while loop.time() < deadline:
            await asyncio.sleep(READY_POLL_SECONDS)
            if await self.is_ready():
                return
        raise DaemonUnavailableError(
            "Daemon did not become ready within "
            f"{self.settings.daemon_start_timeout_seconds}s",
        )

    def daemon_command(self) -> list[str]:
        if self.settings.daemon_command:
            command = shlex.split(self.settings.daemon_command)
            if not command:
                raise DaemonUnavailableError("YONA_DAEMON_CMD is empty")
            return command
        return [sys.executable, "-m", "yona", "daemon", "run"]

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        info = self.connection_info()
        limit = self.settings.max_message_bytes
        try:
            if info.kind == "unix":
                return await asyncio.open_unix_connection(str(info.path), limit=limit)
            return await asyncio.open_connection(info.host, info.port, limit=limit)
        except OSError as error:
            raise DaemonUnavailableError(
                f"Cannot connect to daemon at {info.describe()}: {error}",
            ) from error


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(ConnectionError, OSError):
        await writer.wait_closed()
