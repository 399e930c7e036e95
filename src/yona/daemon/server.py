"""Transport listener: accepts connections and serves framed commands.

Each connection gets a private ``LineFramer``. Every complete message in a read
is answered (in order) before the next read; ``subscribe`` additionally turns
the connection into a broadcast target.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import replace

from yona.config import Settings
from yona.daemon.broadcaster import EventBroadcaster
from yona.daemon.chat import ChatProvider, ChatService, EchoChatProvider, OpenAIChatProvider
from yona.daemon.dispatcher import CommandDispatcher
from yona.daemon.errors import CommandValidationError, DaemonError, MessageDecodeError
from yona.daemon.executor import TaskWork
from yona.daemon.framing import LineFramer, encode_message
from yona.daemon.protocol import Response, SubscribeCommand, error_response, parse_command
from yona.daemon.runtime import ConnectionInfo, RuntimeFiles, resolve_connection_info
from yona.daemon.sessions import SessionRegistry

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 65_536
SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


def build_chat_provider(settings: Settings) -> ChatProvider:
    if settings.chat.provider == "echo":
        return EchoChatProvider()
    return OpenAIChatProvider(api_key=settings.chat.api_key)


class DaemonServer:
    """Owns the listening socket and wires the core components together."""

    def __init__(
        self,
        *,
        settings: Settings,
        registry: SessionRegistry,
        dispatcher: CommandDispatcher,
        broadcaster: EventBroadcaster,
        chat: ChatService,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.dispatcher = dispatcher
        self.broadcaster = broadcaster
        self.chat = chat
        self.runtime_files = RuntimeFiles(settings.transport)
        self.connection_info: ConnectionInfo = resolve_connection_info(settings.transport)
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.StreamWriter] = set()
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        chat_provider: ChatProvider | None = None,
        work: TaskWork | None = None,
    ) -> DaemonServer:
        registry = SessionRegistry(
            work=work,
            default_duration_ms=settings.tasks.default_duration_ms,
        )
        broadcaster = EventBroadcaster(
            delimiter=settings.transport.delimiter,
            buffer_limit_bytes=settings.transport.subscriber_buffer_limit_bytes,
        )
        registry.add_listener(broadcaster.broadcast)
        chat = ChatService(
            registry=registry,
            provider=chat_provider or build_chat_provider(settings),
            default_model=settings.chat.default_model,
        )
        return cls(
            settings=settings,
            registry=registry,
            dispatcher=CommandDispatcher(registry=registry, chat=chat),
            broadcaster=broadcaster,
            chat=chat,
        )

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        """Bind the rendezvous point and write the runtime files."""

        if self.runtime_files.is_daemon_running():
            raise DaemonError(
                f"Daemon already running (pid {self.runtime_files.read_pid()})",
            )
        self.runtime_files.cleanup()

        info = self.connection_info
        try:
            if info.kind == "unix":
                assert info.path is not None
                info.path.parent.mkdir(parents=True, exist_ok=True)
                self._server = await asyncio.start_unix_server(
                    self._handle_connection,
                    path=str(info.path),
                )
            else:
                self._server = await asyncio.start_server(
                    self._handle_connection,
                    host=info.host,
                    port=info.port,
                )
                bound_port = self._server.sockets[0].getsockname()[1]
                self.connection_info = replace(info, port=bound_port)
                self.runtime_files.write_port(bound_port)
        except OSError as error:
            self.runtime_files.cleanup()
            raise DaemonError(f"Cannot listen on {info.describe()}: {error}") from error

        self.runtime_files.write_pid()
        logger.info("Daemon listening on %s", self.connection_info.describe())

    def request_stop(self) -> None:
        self._stop_event.set()

    async def serve_until_stopped(self) -> None:
        """Serve until ``request_stop`` or a termination signal, then close."""

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for name in SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.add_signal_handler(signum, self._on_signal, name)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(signum)
        try:
            await self._stop_event.wait()
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
            await self.close()

    async def close(self) -> None:
        """Stop accepting, drop every connection, abort work, remove runtime files."""

        if self._server is not None:
            self._server.close()
        self.broadcaster.close()
        for writer in list(self._connections):
            writer.close()
        await self.chat.aclose()
        await self.registry.aclose()
        if self._server is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(self._server.wait_closed(), timeout=5.0)
            self._server = None
        self.runtime_files.cleanup()
        logger.info("Daemon stopped")

    def _on_signal(self, name: str) -> None:
        logger.info("Received %s, shutting down", name)
        self.request_stop()

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        transport = self.settings.transport
        framer = LineFramer(transport.delimiter, transport.max_message_bytes)
        self._connections.add(writer)
        logger.debug("Connection opened")
        try:
            while True:
                data = await reader.read(READ_CHUNK_BYTES)
                if not data:
                    break
                for message in framer.feed(data):
                    if message is None:
                        await self._send(
                            writer,
                            error_response(
                                None,
                                f"Message exceeds {framer.max_message_bytes} bytes",
                            ),
                        )
                    else:
                        await self._process(message, writer)
        except (ConnectionError, OSError) as error:
            logger.debug("Connection dropped: %s", error)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Connection handler failed")
        finally:
            self.broadcaster.discard(writer)
            self._connections.discard(writer)
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()
            logger.debug("Connection closed")

    async def _process(self, message: bytes, writer: asyncio.StreamWriter) -> None:
        try:
            command = parse_command(message)
        except MessageDecodeError as error:
            response = error_response(None, str(error))
        except CommandValidationError as error:
            response = error_response(error.command_id, str(error))
        else:
            if isinstance(command, SubscribeCommand):
                self.broadcaster.add(writer)
            response = self.dispatcher.handle(command)
        await self._send(writer, response)

    async def _send(self, writer: asyncio.StreamWriter, response: Response) -> None:
        writer.write(encode_message(response.to_dict(), self.settings.transport.delimiter))
        await writer.drain()


async def run_daemon(
    settings: Settings,
    *,
    chat_provider: ChatProvider | None = None,
    work: TaskWork | None = None,
) -> None:
    """Start the daemon and block until it is told to stop."""

    server = DaemonServer.from_settings(settings, chat_provider=chat_provider, work=work)
    await server.start()
    await server.serve_until_stopped()
