"""Bounded output capture — fixed-memory tail buffer for subprocess streams.

An agent run can print far more than we want to hold in memory. Each
stream (stdout, stderr) of one run gets its own ``BoundedBuffer`` that keeps
only the trailing ``capacity`` characters. Once anything has been dropped
the ``truncated`` flag is set and stays set for the life of the buffer.

Design Notes:
- Chunks are kept in a ``collections.deque`` with a running length, so an
  append is amortized O(len(text)) instead of re-copying the whole tail.
- A buffer belongs to a single invocation and is never shared, so there is
  no locking here.
"""

from __future__ import annotations

import logging
import os
from collections import deque

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_BYTES = 10 * 1024 * 1024  # 10 MiB

MAX_BUFFER_ENV = "MAX_OUTPUT_BUFFER_BYTES"


def get_max_buffer_bytes(raw: str | int | None = None) -> int:
    """Resolve the per-stream capture limit.

    Args:
        raw: Explicit override. When ``None`` the ``MAX_OUTPUT_BUFFER_BYTES``
            environment variable is consulted.

    Non-numeric, zero or negative values fall back to the 10 MiB default.
    """
    if raw is None:
        raw = os.environ.get(MAX_BUFFER_ENV)
    if raw is None or raw == "":
        return DEFAULT_MAX_BUFFER_BYTES
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric buffer limit %r", raw)
        return DEFAULT_MAX_BUFFER_BYTES
    if value <= 0:
        logger.warning("Ignoring non-positive buffer limit %r", raw)
        return DEFAULT_MAX_BUFFER_BYTES
    return value


class BoundedBuffer:
    """Rolling tail buffer with a sticky truncation flag.

    Parameters
    ----------
    capacity:
        Maximum number of characters retained (default 10 MiB).
    """

    def __init__(self, capacity: int = DEFAULT_MAX_BUFFER_BYTES) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._chunks: deque[str] = deque()
        self._length = 0
        self._truncated = False

    def append(self, text: str) -> None:
        """Append ``text``, dropping the oldest content beyond capacity."""
        if not text:
            return
        self._chunks.append(text)
        self._length += len(text)

        excess = self._length - self._capacity
        if excess <= 0:
            return

        self._truncated = True
        while excess > 0:
            head = self._chunks[0]
            if len(head) <= excess:
                self._chunks.popleft()
                self._length -= len(head)
                excess -= len(head)
            else:
                self._chunks[0] = head[excess:]
                self._length -= excess
                excess = 0

    @property
    def truncated(self) -> bool:
        """True once any content has been dropped. Never reset."""
        return self._truncated

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return self._length

    def to_string(self) -> str:
        """Return the retained tail as one string."""
        if len(self._chunks) > 1:
            joined = "".join(self._chunks)
            self._chunks.clear()
            self._chunks.append(joined)
        return self._chunks[0] if self._chunks else ""

    def __str__(self) -> str:
        return self.to_string()
