from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any

import allure
import pytest

from yona.config import Settings
from yona.daemon.chat import EchoChatProvider
from yona.daemon.client import DaemonClient
from yona.daemon.errors import DaemonError, DaemonUnavailableError
from yona.daemon.framing import encode_message
from yona.daemon.server import DaemonServer

pytestmark = [
    allure.epic("Control Socket"),
    allure.feature("Daemon Server"),
]

READ_TIMEOUT = 3.0


@contextlib.asynccontextmanager
async def _running_daemon(settings: Settings):
    server = DaemonServer.from_settings(settings, chat_provider=EchoChatProvider())
    await server.start()
    try:
        yield server
    finally:
        await server.close()


async def _connect(server: DaemonServer) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    info = server.connection_info
    if info.kind == "unix":
        return await asyncio.open_unix_connection(str(info.path))
    return await asyncio.open_connection(info.host, info.port)


async def _read(reader: asyncio.StreamReader, delimiter: bytes = b"\n") -> dict[str, Any]:
    line = await asyncio.wait_for(reader.readuntil(delimiter), timeout=READ_TIMEOUT)
    return json.loads(line[:-1])


async def _subscribe(server: DaemonServer) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    reader, writer = await _connect(server)
    writer.write(b'{"id":"sub","action":"subscribe"}\n')
    await writer.drain()
    assert await _read(reader) == {"id": "sub", "success": True, "data": {"subscribed": True}}
    return reader, writer


async def _events_until(reader, stop) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    while True:
        event = await _read(reader)
        events.append(event)
        if stop(event):
            return events


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(ConnectionError, OSError):
        await writer.wait_closed()


@pytest.mark.asyncio
async def test_ping_round_trip_through_client(settings) -> None:
    async with _running_daemon(settings):
        response = await DaemonClient(settings.transport).request({"action": "ping"})

    assert response.success
    assert response.data == {"message": "pong"}


@pytest.mark.asyncio
async def test_pipelined_commands_are_answered_in_order(settings) -> None:
    async with _running_daemon(settings) as server:
        reader, writer = await _connect(server)
        writer.write(
            b'{"id":"1","action":"ping"}\n'
            b'{"id":"2","action":"session_list"}\n'
            b'{"id":"3","action":"ping"}\n',
        )
        await writer.drain()

        replies = [await _read(reader) for _ in range(3)]
        await _close(writer)

    assert [reply["id"] for reply in replies] == ["1", "2", "3"]
    assert replies[1]["data"] == {"sessions": []}


@pytest.mark.asyncio
async def test_message_split_across_writes_is_reassembled(settings) -> None:
    async with _running_daemon(settings) as server:
        reader, writer = await _connect(server)
        for fragment in (b'{"id":"frag",', b'"action":', b'"ping"}', b"\n"):
            writer.write(fragment)
            await writer.drain()
            await asyncio.sleep(0.01)

        reply = await _read(reader)
        await _close(writer)

    assert reply == {"id": "frag", "success": True, "data": {"message": "pong"}}


@pytest.mark.asyncio
async def test_invalid_json_gets_unknown_id_and_connection_survives(settings) -> None:
    async with _running_daemon(settings) as server:
        reader, writer = await _connect(server)
        writer.write(b"this is not json\n")
        await writer.drain()
        error = await _read(reader)

        writer.write(b'{"id":"after","action":"ping"}\n')
        await writer.drain()
        follow_up = await _read(reader)
        await _close(writer)

    assert error == {"id": "unknown", "success": False, "error": "Invalid JSON"}
    assert follow_up["id"] == "after"
    assert follow_up["success"] is True


@pytest.mark.asyncio
async def test_validation_error_echoes_command_id(settings) -> None:
    async with _running_daemon(settings) as server:
        reader, writer = await _connect(server)
        writer.write(b'{"id":"v1","action":"run","session":"s"}\n{"id":"v2"}\n')
        await writer.drain()
        missing_name = await _read(reader)
        missing_action = await _read(reader)
        await _close(writer)

    assert missing_name == {
        "id": "v1",
        "success": False,
        "error": "Validation error: name: Field required",
    }
    assert missing_action == {
        "id": "v2",
        "success": False,
        "error": "Validation error: action: Required",
    }


@pytest.mark.asyncio
async def test_oversized_message_gets_exactly_one_reply(settings) -> None:
    settings = replace(settings, transport=replace(settings.transport, max_message_bytes=64))
    async with _running_daemon(settings) as server:
        reader, writer = await _connect(server)
        writer.write(b'{"id":"big","pad":"' + b"x" * 200)
        await writer.drain()
        rejected = await _read(reader)

        writer.write(b'"}\n{"id":"ok","action":"ping"}\n')
        await writer.drain()
        follow_up = await _read(reader)
        await _close(writer)

    assert rejected == {"id": "unknown", "success": False, "error": "Message exceeds 64 bytes"}
    assert follow_up["id"] == "ok"
    assert follow_up["success"] is True


@pytest.mark.asyncio
async def test_oversized_message_spread_over_many_writes(settings) -> None:
    settings = replace(settings, transport=replace(settings.transport, max_message_bytes=64))
    async with _running_daemon(settings) as server:
        reader, writer = await _connect(server)
        writer.write(b'{"id":"huge","pad":"')
        for _ in range(10):
            writer.write(b"x" * 50)
            await writer.drain()
            await asyncio.sleep(0.01)
        writer.write(b'"}\n{"id":"next","action":"ping"}\n')
        await writer.drain()

        replies = [await _read(reader), await _read(reader)]
        await _close(writer)

    assert replies[0] == {"id": "unknown", "success": False, "error": "Message exceeds 64 bytes"}
    assert replies[1]["id"] == "next"
    assert replies[1]["success"] is True


@pytest.mark.asyncio
async def test_undecodable_messages_are_answered_and_connection_survives(settings) -> None:
    async with _running_daemon(settings) as server:
        reader, writer = await _connect(server)
        writer.write(b"\xff\xfe\xfd\n")
        writer.write(b"[" * 100_000 + b"]" * 100_000 + b"\n")
        writer.write(b'{"id":"inf","action":"run","session":"s","name":"n","durationMs":Infinity}\n')
        writer.write(b'{"id":"alive","action":"ping"}\n')
        await writer.drain()

        replies = [await _read(reader) for _ in range(4)]
        await _close(writer)

    invalid = {"id": "unknown", "success": False, "error": "Invalid JSON"}
    assert replies[:3] == [invalid, invalid, invalid]
    assert replies[3]["id"] == "alive"
    assert replies[3]["success"] is True


@pytest.mark.asyncio
async def test_string_duration_is_rejected(settings) -> None:
    async with _running_daemon(settings):
        response = await DaemonClient(settings.transport).request(
            {"action": "run", "session": "s", "name": "n", "durationMs": "50"},
        )

    assert not response.success
    assert response.error.startswith("Validation error: durationMs:")


@pytest.mark.asyncio
async def test_response_larger_than_client_limit_is_reported(settings) -> None:
    async with _running_daemon(settings):
        client = DaemonClient(settings.transport)
        for index in range(3):
            await client.request(
                {"action": "run", "session": "s", "name": f"job-{index}", "durationMs": 10_000},
            )
        small = DaemonClient(replace(settings.transport, max_message_bytes=128))

        with pytest.raises(DaemonUnavailableError, match="exceeds 128 bytes"):
            await small.request({"action": "status", "session": "s"})


@pytest.mark.asyncio
async def test_subscriber_sees_full_task_lifecycle_in_order(settings) -> None:
    async with _running_daemon(settings) as server:
        events_reader, events_writer = await _subscribe(server)
        client = DaemonClient(settings.transport)

        response = await client.request(
            {"action": "run", "session": "s", "name": "build", "durationMs": 50},
        )
        task_id = response.data["task"]["id"]
        events = await _events_until(
            events_reader,
            lambda event: event.get("taskId") == task_id and event["status"] == "completed",
        )
        status = await client.request({"action": "status", "session": "s", "taskId": task_id})
        await _close(events_writer)

    assert response.data["task"]["status"] == "queued"
    assert events[0]["type"] == "session"
    assert events[0]["session"] == "s"
    assert [event["status"] for event in events[1:]] == ["queued", "running", "completed"]
    assert all(isinstance(event["timestamp"], int) for event in events)
    task = status.data["task"]
    assert task["status"] == "completed"
    assert task["result"] == "ok"
    assert task["startedAt"] <= task["endedAt"]


@pytest.mark.asyncio
async def test_stopping_queued_task_skips_running(settings) -> None:
    async with _running_daemon(settings) as server:
        events_reader, events_writer = await _subscribe(server)
        client = DaemonClient(settings.transport)

        first = await client.request(
            {"action": "run", "session": "s", "name": "long", "durationMs": 10_000},
        )
        second = await client.request(
            {"action": "run", "session": "s", "name": "next", "durationMs": 10_000},
        )
        second_id = second.data["task"]["id"]
        stopped = await client.request({"action": "stop", "session": "s", "taskId": second_id})
        await client.request(
            {"action": "stop", "session": "s", "taskId": first.data["task"]["id"]},
        )
        events = await _events_until(
            events_reader,
            lambda event: event.get("taskId") == first.data["task"]["id"]
            and event["status"] == "cancelled",
        )
        await _close(events_writer)

    assert stopped.data["task"]["status"] == "cancelled"
    assert [event["status"] for event in events if event.get("taskId") == second_id] == [
        "queued",
        "cancelled",
    ]


@pytest.mark.asyncio
async def test_sessions_run_tasks_concurrently(settings) -> None:
    async with _running_daemon(settings):
        client = DaemonClient(settings.transport)
        for session in ("alpha", "beta"):
            await client.request(
                {"action": "run", "session": session, "name": "job", "durationMs": 10_000},
            )

        statuses = [
            (await client.request({"action": "status", "session": session})).data["tasks"][0]["status"]
            for session in ("alpha", "beta")
        ]
        listing = await client.request({"action": "session_list"})

    assert statuses == ["running", "running"]
    assert [item["name"] for item in listing.data["sessions"]] == ["alpha", "beta"]
    assert [item["taskCount"] for item in listing.data["sessions"]] == [1, 1]


@pytest.mark.asyncio
async def test_chat_reply_is_streamed_to_subscribers(settings) -> None:
    async with _running_daemon(settings) as server:
        events_reader, events_writer = await _subscribe(server)
        response = await DaemonClient(settings.transport).request(
            {"action": "chat", "session": "s", "text": "hi there"},
        )
        message_id = response.data["messageId"]
        events = await _events_until(
            events_reader,
            lambda event: event.get("role") == "assistant" and event.get("isFinal") is True,
        )
        await _close(events_writer)

    chat_events = [event for event in events if event["type"] == "chat"]
    assert all(event["messageId"] == message_id for event in chat_events)
    assert chat_events[0]["role"] == "user"
    assert chat_events[0]["text"] == "hi there"
    deltas = "".join(event["delta"] for event in chat_events if "delta" in event)
    assert deltas == "echo: hi there"
    assert chat_events[-1]["text"] == "echo: hi there"


@pytest.mark.asyncio
async def test_disconnected_subscriber_is_forgotten(settings) -> None:
    async with _running_daemon(settings) as server:
        _, events_writer = await _subscribe(server)
        assert len(server.broadcaster) == 1

        await _close(events_writer)
        for _ in range(100):
            if len(server.broadcaster) == 0:
                break
            await asyncio.sleep(0.01)

        assert len(server.broadcaster) == 0
        response = await DaemonClient(settings.transport).request(
            {"action": "run", "session": "s", "name": "after", "durationMs": 5},
        )
        assert response.success


@pytest.mark.asyncio
async def test_custom_delimiter_end_to_end(settings) -> None:
    settings = replace(settings, transport=replace(settings.transport, delimiter=b"\0"))
    async with _running_daemon(settings) as server:
        reader, writer = await _connect(server)
        writer.write(encode_message({"id": "nl", "action": "ping"}, b"\0"))
        await writer.drain()
        reply = await _read(reader, b"\0")
        await _close(writer)

    assert reply["data"] == {"message": "pong"}


@pytest.mark.asyncio
async def test_runtime_files_follow_server_lifecycle(settings) -> None:
    server = DaemonServer.from_settings(settings, chat_provider=EchoChatProvider())
    await server.start()
    try:
        assert server.runtime_files.pid_file.exists()
        assert server.runtime_files.port_file.read_text(encoding="utf-8") == str(
            server.connection_info.port,
        )
        assert server.is_serving

        second = DaemonServer.from_settings(settings, chat_provider=EchoChatProvider())
        with pytest.raises(DaemonError, match="Daemon already running"):
            await second.start()
    finally:
        await server.close()

    assert not server.runtime_files.pid_file.exists()
    assert not server.runtime_files.port_file.exists()


@pytest.mark.asyncio
async def test_unix_socket_transport(settings) -> None:
    # AF_UNIX paths are length-limited; pytest's tmp_path can be too deep.
    runtime_dir = Path(tempfile.mkdtemp(prefix="yona-"))
    settings = replace(
        settings,
        transport=replace(settings.transport, transport="unix", runtime_dir=runtime_dir),
    )
    try:
        async with _running_daemon(settings) as server:
            assert server.connection_info.kind == "unix"
            assert server.runtime_files.socket_path.exists()
            response = await DaemonClient(settings.transport).request({"action": "ping"})
        assert response.data == {"message": "pong"}
        assert not server.runtime_files.socket_path.exists()
    finally:
        shutil.rmtree(runtime_dir, ignore_errors=True)


@pytest.mark.asyncio
async def test_client_reports_not_ready_without_daemon(settings) -> None:
    client = DaemonClient(replace(settings.transport, port=1))

    assert await client.is_ready() is False
