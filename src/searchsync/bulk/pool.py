"""Fixed-capacity pool of reusable ``_bulk`` request buffers.

A bulk session fills one buffer while up to ``concurrency`` others are in
flight, so the pool holds exactly ``concurrency + 1`` slots. Running out of
slots is a sizing bug, never a reason to wait.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from searchsync.exceptions import CapacityError


@dataclass(slots=True, eq=False)
class Buffer:
    """Accumulates the NDJSON body of one ``_bulk`` request."""

    slot: int
    data: bytearray = field(default_factory=bytearray)
    nrows: int = 0
    compressed: Optional[bytes] = None

    def __len__(self) -> int:
        return len(self.data)

    def append(self, chunk: bytes) -> None:
        self.data += chunk
        self.nrows += 1

    def clear(self) -> None:
        self.data.clear()
        self.nrows = 0
        self.compressed = None


class BufferPool:
    """Arena of ``capacity`` buffer slots with an O(1) free-list."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("buffer pool capacity must be at least 1")
        self._slots: List[Buffer] = [Buffer(slot=i) for i in range(capacity)]
        # reversed so that slot 0 is handed out first
        self._free: List[int] = list(range(capacity - 1, -1, -1))

    @property
    def capacity(self) -> int:
        return len(self._slots)

    @property
    def checked_out(self) -> int:
        return len(self._slots) - len(self._free)

    def checkout(self) -> Buffer:
        if not self._free:
            raise CapacityError(
                f"Unable to checkout from batch pool ({self.capacity} buffers all in use)"
            )
        return self._slots[self._free.pop()]

    def release(self, buffer: Buffer) -> None:
        """Clear ``buffer`` and return it to its original slot.

        Releasing the same buffer twice corrupts the free-list; callers own
        the bookkeeping that prevents it.
        """
        buffer.clear()
        self._free.append(buffer.slot)
