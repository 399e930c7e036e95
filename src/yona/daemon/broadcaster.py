"""Best-effort fan-out of events to subscribed connections."""

from __future__ import annotations

import asyncio
import logging

from yona.daemon.framing import DEFAULT_DELIMITER, encode_message
from yona.daemon.models import Event

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Owns the set of subscriber connections.

    ``broadcast`` is synchronous: when it returns, a write was attempted on
    every subscriber known at call time. Subscribers whose transport is closing,
    raises on write, or has more than ``buffer_limit_bytes`` unsent are dropped.
    """

    def __init__(
        self,
        *,
        delimiter: bytes = DEFAULT_DELIMITER,
        buffer_limit_bytes: int = 1_048_576,
    ) -> None:
        self.delimiter = delimiter
        self.buffer_limit_bytes = buffer_limit_bytes
        # dict keeps subscription order for deterministic delivery
        self._subscribers: dict[asyncio.StreamWriter, None] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, writer: object) -> bool:
        return writer in self._subscribers

    def add(self, writer: asyncio.StreamWriter) -> None:
        self._subscribers[writer] = None
        logger.debug("Subscriber added (%d total)", len(self._subscribers))

    def discard(self, writer: asyncio.StreamWriter) -> None:
        if writer in self._subscribers:
            del self._subscribers[writer]
            logger.debug("Subscriber removed (%d total)", len(self._subscribers))

    def broadcast(self, event: Event) -> None:
        if not self._subscribers:
            return
        line = encode_message(event.to_dict(), self.delimiter)
        for writer in list(self._subscribers):
            if not self._deliver(writer, line):
                self._drop(writer)

    def close(self) -> None:
        for writer in list(self._subscribers):
            writer.close()
        self._subscribers.clear()

    def _deliver(self, writer: asyncio.StreamWriter, line: bytes) -> bool:
        if writer.is_closing():
            return False
        try:
            writer.write(line)
        except (ConnectionError, RuntimeError, OSError) as error:
            logger.warning("Dropping subscriber after write failure: %s", error)
            return False
        if writer.transport.get_write_buffer_size() > self.buffer_limit_bytes:
            logger.warning(
                "Dropping slow subscriber (%d bytes unsent)",
                writer.transport.get_write_buffer_size(),
            )
            return False
        return True

    def _drop(self, writer: asyncio.StreamWriter) -> None:
        self.discard(writer)
        writer.close()
