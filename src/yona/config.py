"""Runtime configuration for the daemon, its transport, and the CLI client."""

from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_TRANSPORTS = ("auto", "unix", "tcp")
SUPPORTED_CHAT_PROVIDERS = ("openai", "echo")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class TransportSettings:
    """Rendezvous point and framing settings shared by daemon and client."""

    daemon_name: str = "yona-daemon"
    runtime_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    transport: str = "auto"
    host: str = "127.0.0.1"
    port: int | None = None
    delimiter: bytes = b"\n"
    max_message_bytes: int = 1_048_576
    request_timeout_seconds: float = 30.0
    subscriber_buffer_limit_bytes: int = 1_048_576
    daemon_command: str | None = None
    daemon_start_timeout_seconds: float = 5.0

    @property
    def resolved_transport(self) -> str:
        if self.transport != "auto":
            return self.transport
        return "tcp" if sys.platform == "win32" else "unix"


@dataclass(slots=True)
class TaskSettings:
    """Task executor defaults."""

    default_duration_ms: int = 1000


@dataclass(slots=True)
class ChatSettings:
    """Chat collaborator settings."""

    provider: str = "openai"
    default_model: str = "gpt-4o-mini"
    api_key: str | None = None


@dataclass(slots=True)
class LoggingSettings:
    """Daemon logging settings."""

    level: str = "INFO"
    log_file: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    transport: TransportSettings = field(default_factory=TransportSettings)
    tasks: TaskSettings = field(default_factory=TaskSettings)
    chat: ChatSettings = field(default_factory=ChatSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``YONA_*`` environment variables."""

        port_raw = os.getenv("YONA_PORT", "").strip()
        log_file_raw = os.getenv("YONA_LOG_FILE", "").strip()
        runtime_dir_raw = os.getenv("YONA_RUNTIME_DIR", "").strip()
        return cls(
            transport=TransportSettings(
                daemon_name=os.getenv("YONA_DAEMON_NAME", "yona-daemon"),
                runtime_dir=Path(runtime_dir_raw) if runtime_dir_raw else Path(tempfile.gettempdir()),
                transport=os.getenv("YONA_TRANSPORT", "auto").strip().lower(),
                host=os.getenv("YONA_HOST", "127.0.0.1"),
                port=_parse_int("YONA_PORT", port_raw) if port_raw else None,
                delimiter=_parse_delimiter(os.getenv("YONA_FRAME_DELIMITER", "\\n")),
                max_message_bytes=_env_int("YONA_MAX_MESSAGE_BYTES", 1_048_576),
                request_timeout_seconds=_env_float("YONA_REQUEST_TIMEOUT_SECONDS", 30.0),
                subscriber_buffer_limit_bytes=_env_int(
                    "YONA_SUBSCRIBER_BUFFER_LIMIT_BYTES",
                    1_048_576,
                ),
                daemon_command=os.getenv("YONA_DAEMON_CMD") or None,
                daemon_start_timeout_seconds=_env_float(
                    "YONA_DAEMON_START_TIMEOUT_SECONDS",
                    5.0,
                ),
            ),
            tasks=TaskSettings(
                default_duration_ms=_env_int("YONA_DEFAULT_TASK_DURATION_MS", 1000),
            ),
            chat=ChatSettings(
                provider=os.getenv("YONA_CHAT_PROVIDER", "openai").strip().lower(),
                default_model=os.getenv("YONA_CHAT_MODEL", "gpt-4o-mini"),
                api_key=os.getenv("OPENAI_API_KEY") or None,
            ),
            logging=LoggingSettings(
                level=os.getenv("YONA_LOG_LEVEL", "INFO").strip().upper(),
                log_file=Path(log_file_raw) if log_file_raw else None,
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` naming the first invalid setting."""

        transport = self.transport
        if transport.transport not in SUPPORTED_TRANSPORTS:
            raise ValueError(
                f"Unsupported YONA_TRANSPORT: {transport.transport!r}. "
                f"Expected one of: {', '.join(SUPPORTED_TRANSPORTS)}.",
            )
        if not transport.daemon_name.strip():
            raise ValueError("YONA_DAEMON_NAME must not be empty.")
        if transport.port is not None and not 0 <= transport.port < 65_536:
            raise ValueError(f"YONA_PORT must be in 0..65535, got {transport.port}.")
        if len(transport.delimiter) != 1:
            raise ValueError("YONA_FRAME_DELIMITER must be exactly one byte.")
        if transport.max_message_bytes <= 0:
            raise ValueError("YONA_MAX_MESSAGE_BYTES must be > 0.")
        if transport.request_timeout_seconds <= 0:
            raise ValueError("YONA_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if transport.subscriber_buffer_limit_bytes <= 0:
            raise ValueError("YONA_SUBSCRIBER_BUFFER_LIMIT_BYTES must be > 0.")
        if self.tasks.default_duration_ms <= 0:
            raise ValueError("YONA_DEFAULT_TASK_DURATION_MS must be > 0.")
        if self.chat.provider not in SUPPORTED_CHAT_PROVIDERS:
            raise ValueError(
                f"Unsupported YONA_CHAT_PROVIDER: {self.chat.provider!r}. "
                f"Expected one of: {', '.join(SUPPORTED_CHAT_PROVIDERS)}.",
            )
        if self.logging.level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"Unsupported YONA_LOG_LEVEL: {self.logging.level!r}.")


def _parse_delimiter(raw: str) -> bytes:
    escapes = {"\\n": b"\n", "\\r": b"\r", "\\0": b"\0", "\\t": b"\t"}
    if raw in escapes:
        return escapes[raw]
    encoded = raw.encode("utf-8")
    if len(encoded) != 1:
        raise ValueError(
            f"Invalid YONA_FRAME_DELIMITER: {raw!r}. Expected a single byte such as '\\n'.",
        )
    return encoded


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return _parse_int(name, raw.strip())


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {raw!r}") from error
