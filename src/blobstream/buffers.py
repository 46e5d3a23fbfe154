"""BufferPool: reusable byte buffers for chunked stream I/O."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class BufferPool:
    """Thread-safe pool of ``bytearray`` buffers.

    Every buffer handed out by ``acquire`` must come back through ``release``;
    ``outstanding`` counts the buffers currently in use so leaks are
    observable. Released buffers are cleared and kept for reuse, up to
    ``max_pooled`` of them.
    """

    def __init__(self, *, max_pooled: int = 16) -> None:
        if max_pooled < 0:
            msg = "max_pooled must be >= 0."
            raise ValueError(msg)
        self._lock = threading.Lock()
        self._max_pooled = max_pooled
        self._free: list[bytearray] = []
        self._in_use: dict[int, bytearray] = {}

    @property
    def outstanding(self) -> int:
        """Return how many buffers are currently handed out."""
        with self._lock:
            return len(self._in_use)

    @property
    def pooled(self) -> int:
        """Return how many idle buffers are kept for reuse."""
        with self._lock:
            return len(self._free)

    def acquire(self) -> bytearray:
        """Hand out an empty buffer."""
        with self._lock:
            buffer = self._free.pop() if self._free else bytearray()
            self._in_use[id(buffer)] = buffer
            return buffer

    def release(self, buffer: bytearray) -> None:
        """Return a buffer obtained from ``acquire``."""
        with self._lock:
            if self._in_use.pop(id(buffer), None) is None:
                msg = "Buffer was not acquired from this pool or was already released."
                raise ValueError(msg)
            del buffer[:]
            if len(self._free) < self._max_pooled:
                self._free.append(buffer)

    @contextmanager
    def lease(self) -> Iterator[bytearray]:
        """Acquire a buffer for the duration of a ``with`` block."""
        buffer = self.acquire()
        try:
            yield buffer
        finally:
            self.release(buffer)


default_buffer_pool = BufferPool()
