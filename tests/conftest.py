"""Shared test fixtures."""

from __future__ import annotations

import pytest

from yona.config import ChatSettings, Settings, TaskSettings, TransportSettings
from yona.daemon.models import Event


class FakeTransport:
    def __init__(self) -> None:
        self.buffered = 0

    def get_write_buffer_size(self) -> int:
        return self.buffered


class FakeWriter:
    """Stands in for ``asyncio.StreamWriter`` in broadcaster tests."""

    def __init__(self, *, fail_with: Exception | None = None, buffered: int = 0) -> None:
        self.transport = FakeTransport()
        self.transport.buffered = buffered
        self.fail_with = fail_with
        self.written: list[bytes] = []
        self.closed = False

    def is_closing(self) -> bool:
        return self.closed

    def write(self, data: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.written.append(data)

    def close(self) -> None:
        self.closed = True


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def dicts(self, event_type: str | None = None) -> list[dict]:
        payloads = [event.to_dict() for event in self.events]
        if event_type is None:
            return payloads
        return [payload for payload in payloads if payload["type"] == event_type]


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    """TCP on an ephemeral port with runtime files isolated in ``tmp_path``."""
    return Settings(
        transport=TransportSettings(
            daemon_name="yona-test",
            runtime_dir=tmp_path,
            transport="tcp",
            port=0,
            request_timeout_seconds=5.0,
            daemon_start_timeout_seconds=1.0,
        ),
        tasks=TaskSettings(default_duration_ms=50),
        chat=ChatSettings(provider="echo"),
    )


@pytest.fixture()
def fake_writer() -> type[FakeWriter]:
    return FakeWriter
