"""A single migration step and the buffering of its body."""

from __future__ import annotations

import queue
from datetime import datetime
from typing import BinaryIO

__all__ = ["DEFAULT_BUFFER_SIZE", "EMPTY_IDENTIFIER", "Migration"]

# In-memory read-ahead (in bytes) for every pre-read migration.
DEFAULT_BUFFER_SIZE = 100_000

EMPTY_IDENTIFIER = "<empty>"


class _Pipe:
    """A blocking in-memory pipe: one thread writes, another reads."""

    _EOF = object()

    def __init__(self, depth: int = 2) -> None:
        self._chunks: queue.Queue = queue.Queue(maxsize=depth)
        self._pending = b""
        self._done = False
        self._error: BaseException | None = None

    def write(self, data: bytes) -> None:
        if data:
            self._chunks.put(bytes(data))

    def close_writer(self, error: BaseException | None = None) -> None:
        self._chunks.put(self._EOF if error is None else error)

    def readable(self) -> bool:
        return True

    def _fill(self) -> bool:
        """Pull one more chunk into the pending data; False at end of data."""
        if self._done:
            if self._error is not None:
                raise self._error
            return False
        item = self._chunks.get()
        if item is self._EOF:
            self._done = True
            return False
        if isinstance(item, BaseException):
            self._done = True
            self._error = item
            raise item
        self._pending += item
        return True

    def read(self, size: int | None = -1) -> bytes:
        if size is None or size < 0:
            while self._fill():
                pass
            data, self._pending = self._pending, b""
            return data
        while len(self._pending) < size and self._fill():
            pass
        data, self._pending = self._pending[:size], self._pending[size:]
        return data


class Migration:
    """A migration from ``version`` to ``target_version``.

    ``body`` may be None, which makes this a nil migration: the version is
    applied but nothing is run. ``target_version`` may be -1, the nil version.
    """

    def __init__(
        self,
        body: BinaryIO | None,
        identifier: str = "",
        version: int = 0,
        target_version: int = 0,
    ) -> None:
        now = datetime.now()
        self.identifier = identifier
        self.version = version
        self.target_version = target_version
        self.body = body
        self.scheduled = now
        self.started_buffering: datetime | None = None
        self.finished_buffering: datetime | None = None
        self.finished_reading: datetime | None = None
        self.bytes_read = 0
        self.buffer_size = 0
        self.buffered_body: _Pipe | None = None

        if body is None:
            if not identifier:
                self.identifier = EMPTY_IDENTIFIER
            self.started_buffering = now
            self.finished_buffering = now
            self.finished_reading = now
        else:
            self.buffer_size = DEFAULT_BUFFER_SIZE
            self.buffered_body = _Pipe()

    def __str__(self) -> str:
        return f"{self.identifier} [{self.version}=>{self.target_version}]"

    def __repr__(self) -> str:
        return f"Migration({self})"

    def log_string(self) -> str:
        """Describe this migration for humans, e.g. ``1/u create_users``."""
        direction = "d" if self.target_version < self.version else "u"
        return f"{self.version}/{direction} {self.identifier}"

    def _read_up_to(self, size: int) -> bytes:
        parts = []
        remaining = size
        while remaining > 0:
            chunk = self.body.read(remaining)
            if not chunk:
                break
            parts.append(chunk)
            remaining -= len(chunk)
        return b"".join(parts)

    def buffer(self) -> None:
        """Read the body into ``buffered_body``.

        Blocks until a reader drains ``buffered_body``; run it in a thread.
        The body is closed once it has been read completely.
        """
        if self.body is None:
            return

        self.started_buffering = datetime.now()
        chunk_size = max(self.buffer_size, 1)
        try:
            head = self._read_up_to(self.buffer_size)
            self.finished_buffering = datetime.now()
            total = len(head)
            self.buffered_body.write(head)
            while chunk := self.body.read(chunk_size):
                self.buffered_body.write(chunk)
                total += len(chunk)
        except BaseException as exc:
            self.buffered_body.close_writer(exc)
            raise

        self.finished_reading = datetime.now()
        self.bytes_read = total
        self.buffered_body.close_writer()
        self.body.close()