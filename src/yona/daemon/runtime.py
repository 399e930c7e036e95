"""Rendezvous address and runtime files (PID, port, socket) for the daemon."""

from __future__ import annotations

import contextlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from yona.config import TransportSettings

logger = logging.getLogger(__name__)

DYNAMIC_PORT_BASE = 49152
DYNAMIC_PORT_SPAN = 16383


def port_for_key(key: str) -> int:
    """Stable port in the dynamic range derived from a 32-bit string hash."""

    value = 0
    for char in key:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return DYNAMIC_PORT_BASE + abs(value) % DYNAMIC_PORT_SPAN


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    """Where the daemon listens: a Unix socket path or a loopback TCP port."""

    kind: str
    path: Path | None = None
    host: str = "127.0.0.1"
    port: int | None = None

    def describe(self) -> str:
        if self.kind == "unix":
            return f"unix:{self.path}"
        return f"tcp:{self.host}:{self.port}"


def resolve_connection_info(settings: TransportSettings) -> ConnectionInfo:
    if settings.resolved_transport == "tcp":
        return ConnectionInfo(
            kind="tcp",
            host=settings.host,
            port=settings.port if settings.port is not None else port_for_key(settings.daemon_name),
        )
    return ConnectionInfo(kind="unix", path=settings.runtime_dir / f"{settings.daemon_name}.sock")


class RuntimeFiles:
    """PID, port, and socket files owned by a running daemon."""

    def __init__(self, settings: TransportSettings) -> None:
        self.settings = settings
        self.pid_file = settings.runtime_dir / f"{settings.daemon_name}.pid"
        self.port_file = settings.runtime_dir / f"{settings.daemon_name}.port"
        self.socket_path = settings.runtime_dir / f"{settings.daemon_name}.sock"

    def write_pid(self, pid: int | None = None) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(pid if pid is not None else os.getpid()), encoding="utf-8")

    def write_port(self, port: int) -> None:
        self.port_file.parent.mkdir(parents=True, exist_ok=True)
        self.port_file.write_text(str(port), encoding="utf-8")

    def read_pid(self) -> int | None:
        try:
            return int(self.pid_file.read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None

    def is_daemon_running(self) -> bool:
        """Check the PID file; stale files are removed."""

        pid = self.read_pid()
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except PermissionError:
            return True
        except OSError:
            logger.info("Removing stale runtime files for pid %s", pid)
            self.cleanup()
            return False
        return True

    def cleanup(self, *, remove_socket: bool = True) -> None:
        paths = [self.pid_file, self.port_file]
        if remove_socket:
            paths.append(self.socket_path)
        for path in paths:
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
