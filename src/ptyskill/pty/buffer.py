"""Line-indexed output buffer for PTY sessions."""

from __future__ import annotations

import codecs
import re
from collections import deque
from dataclasses import dataclass
from itertools import islice
from typing import Sequence, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class LineMatch:
    """A committed line that matched a search, with its absolute line number."""

    line_number: int  # 1-based, stable across eviction
    text: str


@dataclass(frozen=True)
class BufferSlice:
    """One page of a sequence plus the bookkeeping callers need to page on."""

    items: list
    total: int
    offset: int
    has_more: bool


def paginate(items: Sequence[T], offset: int = 0, limit: int | None = None) -> BufferSlice:
    """Apply the offset/limit/has_more contract to any sequence.

    Returns ``min(limit, max(0, total - offset))`` items; an offset past
    the end yields an empty page rather than an error.
    """
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")
    if limit is not None and limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit}")

    total = len(items)
    start = min(offset, total)
    end = total if limit is None else min(start + limit, total)
    page = list(islice(items, start, end))
    return BufferSlice(
        items=page,
        total=total,
        offset=offset,
        has_more=offset + len(page) < total,
    )


class LineBuffer:
    """Bounded buffer of committed output lines plus one pending partial line.

    Chunks streamed from a pty split lines arbitrarily, so text after the
    last ``\\n`` of an append is held back as *pending* and prefixed onto
    the next append. Only terminated lines are committed; pending text is
    invisible to :meth:`read` and :meth:`search` until it is terminated or
    :meth:`flush` is called (the session does so when its process ends).

    A single trailing ``\\r`` is removed from each committed line so that
    the ``\\r\\n`` produced by a pty counts as one terminator.

    Stores up to ``max_lines`` lines; older lines are evicted FIFO. Line
    numbers are absolute: eviction advances :attr:`first_line_number`
    instead of renumbering the survivors.

    Not thread-safe. Every mutation happens on the daemon's event loop.
    """

    def __init__(self, max_lines: int = 50_000) -> None:
        if max_lines < 1:
            raise ValueError(f"max_lines must be >= 1, got {max_lines}")
        self._max_lines = max_lines
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._evicted: int = 0  # Lines dropped off the front
        self._pending: str = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def append(self, chunk: bytes | str) -> int:
        """Append a raw output chunk, committing every terminated line.

        Args:
            chunk: Bytes straight from the pty, or already-decoded text.
                Bytes go through an incremental UTF-8 decoder so a
                multi-byte character split across chunks survives.

        Returns:
            Number of lines committed by this call.
        """
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return 0

        parts = (self._pending + text).split("\n")
        self._pending = parts.pop()
        for part in parts:
            self._commit(part)
        return len(parts)

    def flush(self) -> bool:
        """Commit the pending partial line, if any. Returns True if one was committed."""
        tail = self._decoder.decode(b"", final=True)
        pending = self._pending + tail
        self._pending = ""
        if not pending:
            return False
        self._commit(pending)
        return True

    def _commit(self, line: str) -> None:
        if line.endswith("\r"):
            line = line[:-1]
        if len(self._lines) == self._max_lines:
            self._evicted += 1
        self._lines.append(line)

    def read(self, offset: int = 0, limit: int | None = None) -> BufferSlice:
        """Read committed lines.

        Args:
            offset: 0-based offset within the retained lines.
            limit: Maximum number of lines to return (None for all).

        Returns:
            A :class:`BufferSlice` whose ``items`` are line strings.
        """
        return paginate(self._lines, offset, limit)

    def search(self, pattern: str | re.Pattern[str], flags: int = 0) -> list[LineMatch]:
        """Return every committed line matching a regex, in order.

        ``pattern.search`` is used, so a match anywhere in the line counts.
        Raises ``re.error`` for an invalid pattern string.
        """
        compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, flags)
        first = self.first_line_number
        return [
            LineMatch(line_number=first + i, text=line)
            for i, line in enumerate(self._lines)
            if compiled.search(line)
        ]

    @property
    def pending(self) -> str:
        """The unterminated tail of the output, not yet committed."""
        return self._pending

    @property
    def max_lines(self) -> int:
        return self._max_lines

    @property
    def line_count(self) -> int:
        """Current number of retained committed lines."""
        return len(self._lines)

    @property
    def total_lines(self) -> int:
        """Total number of lines ever committed, including evicted ones."""
        return self._evicted + len(self._lines)

    @property
    def first_line_number(self) -> int:
        """Absolute 1-based number of the oldest retained line."""
        return self._evicted + 1

    def clear(self) -> None:
        """Release all lines and reset numbering."""
        self._lines.clear()
        self._pending = ""
        self._evicted = 0
        self._decoder.reset()

    def __len__(self) -> int:
        return len(self._lines)
