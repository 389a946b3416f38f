"""PTY process management — managed pseudo-terminal sessions.

Each session runs its child in its own process group on a fresh pty,
captures output into a bounded, line-indexed buffer, and is killed on
cleanup so no child outlives the daemon.
"""

from ptyskill.pty.buffer import BufferSlice, LineBuffer, LineMatch
from ptyskill.pty.manager import (
    PTYError,
    PTYManager,
    ReadResult,
    SearchResult,
    SessionNotFoundError,
    SessionStateError,
    SpawnError,
    WriteError,
)
from ptyskill.pty.process import PtyHandle, PtyProcess
from ptyskill.pty.session import PTYSession, PTYStatus, SessionInfo

__all__ = [
    "BufferSlice",
    "LineBuffer",
    "LineMatch",
    "PTYError",
    "PTYManager",
    "PTYSession",
    "PTYStatus",
    "PtyHandle",
    "PtyProcess",
    "ReadResult",
    "SearchResult",
    "SessionInfo",
    "SessionNotFoundError",
    "SessionStateError",
    "SpawnError",
    "WriteError",
]
