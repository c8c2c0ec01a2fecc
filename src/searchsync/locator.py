"""Physical row locators (PostgreSQL ``ctid``) and their wire encoding."""

from __future__ import annotations

import re
from dataclasses import dataclass

_CTID_RE = re.compile(r"^\(\s*(\d+)\s*,\s*(\d+)\s*\)$")


@dataclass(frozen=True, slots=True, order=True)
class ItemPointer:
    """A heap tuple address: block number and line-pointer offset.

    On the wire the pointer is packed into one unsigned 64-bit integer,
    ``block << 32 | offset``, used both as the default document ``_id`` and
    as the ``zdb_ctid`` doc-value field that scrolls sort and read back.
    """

    block: int
    offset: int

    def __post_init__(self) -> None:
        if not 0 <= self.block <= 0xFFFFFFFF:
            raise ValueError(f"block number out of range: {self.block}")
        if not 0 <= self.offset <= 0xFFFF:
            raise ValueError(f"offset out of range: {self.offset}")

    def to_u64(self) -> int:
        return (self.block << 32) | self.offset

    @classmethod
    def from_u64(cls, value: int) -> "ItemPointer":
        return cls(block=(value >> 32) & 0xFFFFFFFF, offset=value & 0xFFFF)

    @classmethod
    def parse(cls, text: str) -> "ItemPointer":
        """Parse PostgreSQL's text form, e.g. ``"(12,3)"``."""
        m = _CTID_RE.match(text.strip())
        if not m:
            raise ValueError(f"not a ctid: {text!r}")
        return cls(block=int(m.group(1)), offset=int(m.group(2)))

    def __str__(self) -> str:
        return f"({self.block},{self.offset})"
