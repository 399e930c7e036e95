"""Delimiter framing for the control socket byte stream."""

from __future__ import annotations

import json
from typing import Any

from yona.daemon.errors import MessageDecodeError

DEFAULT_DELIMITER = b"\n"


class LineFramer:
    """Per-connection accumulator that splits a byte stream into messages.

    Tolerates messages split across reads and several messages in one read.
    A message longer than ``max_message_bytes`` is dropped up to and including
    its delimiter and shows up exactly once as ``None`` in the ``feed`` output,
    at its position among the other messages.
    """

    def __init__(
        self,
        delimiter: bytes = DEFAULT_DELIMITER,
        max_message_bytes: int = 1_048_576,
    ) -> None:
        if len(delimiter) != 1:
            raise ValueError(f"Frame delimiter must be exactly one byte, got {delimiter!r}")
        self.delimiter = delimiter
        self.max_message_bytes = max_message_bytes
        self._buffer = bytearray()
        self._discarding = False

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet terminated by the delimiter."""

        return len(self._buffer)

    @property
    def discarding(self) -> bool:
        """True while skipping the tail of an oversized message."""

        return self._discarding

    def feed(self, data: bytes) -> list[bytes | None]:
        """Append ``data`` and return complete messages in order.

        Blank messages are skipped; ``None`` marks an oversized message.
        """

        self._buffer.extend(data)
        frames: list[bytes | None] = []
        while True:
            index = self._buffer.find(self.delimiter)
            if index < 0:
                break
            message = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            if self._discarding:
                # Tail of a message already reported as oversized.
                self._discarding = False
            elif len(message) > self.max_message_bytes:
                frames.append(None)
            elif message.strip():
                frames.append(message)
        if len(self._buffer) > self.max_message_bytes:
            self._buffer.clear()
            if not self._discarding:
                self._discarding = True
                frames.append(None)
        return frames


def encode_message(payload: Any, delimiter: bytes = DEFAULT_DELIMITER) -> bytes:
    """Compact JSON encoding followed by the frame delimiter.

    Raises ``ValueError`` for NaN or infinite floats, which JSON cannot carry.
    """

    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return body.encode("utf-8") + delimiter


def decode_message(raw: bytes) -> Any:
    """Parse one message as strict JSON; ``NaN``/``Infinity`` literals are rejected."""

    try:
        return json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)
    except (ValueError, RecursionError) as error:
        # ValueError covers UnicodeDecodeError and JSONDecodeError.
        raise MessageDecodeError("Invalid JSON") from error


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant: {name}")
