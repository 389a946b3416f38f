"""PTY Manager — the session table."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Literal

from pydantic import Field

from ptyskill.config import BufferConfig, TerminalConfig
from ptyskill.pty.buffer import LineBuffer, paginate
from ptyskill.pty.process import ProcessFactory, PtyProcess
from ptyskill.pty.session import (
    PTYSession,
    PTYStatus,
    SessionInfo,
    WireModel,
    generate_session_id,
)

logger = logging.getLogger(__name__)


class PTYError(Exception):
    """Base class for session table failures."""


class SessionNotFoundError(PTYError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"PTY session '{session_id}' not found")
        self.session_id = session_id


class SessionStateError(PTYError):
    """The session exists but is not in a state that allows the operation."""


class SpawnError(PTYError):
    """The process could not be started; nothing was registered."""


class WriteError(PTYError):
    """The process is running but the bytes could not be delivered."""


@dataclass(frozen=True)
class WriteResult:
    success: bool
    bytes: int


class MatchInfo(WireModel):
    line_number: int
    text: str


class ReadResult(WireModel):
    """A page of raw committed lines.

    ``offset`` counts from the oldest retained line, whose absolute number
    is ``first_line_number``.
    """

    kind: Literal["read"] = "read"
    lines: list[str] = Field(default_factory=list)
    total_lines: int
    offset: int
    has_more: bool
    first_line_number: int = 1
    status: PTYStatus


class SearchResult(WireModel):
    """A page of regex matches; pagination applies over matches, not lines."""

    kind: Literal["search"] = "search"
    matches: list[MatchInfo] = Field(default_factory=list)
    total_matches: int
    total_lines: int
    offset: int
    has_more: bool
    status: PTYStatus


class PTYManager:
    """Manages the lifecycle of multiple PTY sessions.

    All sessions go through here. The manager ensures:
    - Sessions are tracked by ID, in insertion order
    - Output and exit callbacks are wired before spawn returns
    - Records are removed only by kill(cleanup=True) or bulk cleanup
    - All sessions are killed on cleanup_all (no orphan processes)

    Every method must be called from the event loop that owns the
    sessions; process callbacks arrive on that same loop, so no locking
    is needed.
    """

    def __init__(
        self,
        buffer_config: BufferConfig | None = None,
        terminal_config: TerminalConfig | None = None,
        process_factory: ProcessFactory | None = None,
        on_exit: Callable[[PTYSession], None] | None = None,
    ) -> None:
        self._sessions: dict[str, PTYSession] = {}
        self._buffer_config = buffer_config or BufferConfig()
        self._terminal = terminal_config or TerminalConfig()
        self._process_factory: ProcessFactory = process_factory or PtyProcess.spawn
        self._on_exit = on_exit

    def _new_id(self) -> str:
        while True:
            session_id = generate_session_id()
            if session_id not in self._sessions:
                return session_id

    async def spawn(
        self,
        command: str,
        args: list[str] | None = None,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        title: str | None = None,
        description: str | None = None,
        owner: str | None = None,
    ) -> SessionInfo:
        """Spawn a new PTY session.

        Args:
            command: Executable to run (looked up on PATH).
            args: Arguments, in order.
            workdir: Working directory. Defaults to the daemon's cwd.
            env: Overrides merged over the daemon's environment.
            title: Human-readable title. Derived from the command line if omitted.
            description: Free-form note shown by clients.
            owner: Owning context id, for :meth:`cleanup_by_owner`.

        Returns:
            Summary of the new, running session.

        Raises:
            SpawnError: The process could not be started.
        """
        session_id = self._new_id()
        args = list(args or [])
        workdir = workdir or os.getcwd()
        if title is None:
            title = f"{command} {' '.join(args)}".strip() or f"Terminal {session_id[-4:]}"

        child_env = {**os.environ, "TERM": self._terminal.term, **(env or {})}

        session = PTYSession(
            id=session_id,
            command=command,
            args=args,
            workdir=workdir,
            env=env,
            title=title,
            description=description,
            owner=owner,
            buffer=LineBuffer(max_lines=self._buffer_config.max_lines),
        )

        def _on_output(data: bytes) -> None:
            session.buffer.append(data)

        def _on_exit(exit_code: int | None) -> None:
            if not session.mark_exited(exit_code):
                return
            logger.info("PTY session %s exited (code=%s)", session.id, exit_code)
            if self._on_exit is not None:
                self._on_exit(session)

        logger.info(
            "Spawning PTY session %s: cmd=%s args=%s workdir=%s",
            session_id,
            command,
            args,
            workdir,
        )
        try:
            session.process = self._process_factory(
                [command, *args],
                cwd=workdir,
                env=child_env,
                cols=self._terminal.cols,
                rows=self._terminal.rows,
                on_output=_on_output,
                on_exit=_on_exit,
            )
        except Exception as e:
            logger.warning("Failed to spawn %s: %s", command, e)
            raise SpawnError(f"Failed to spawn '{command}': {e}") from e

        self._sessions[session_id] = session
        logger.info("PTY session %s started: pid=%d", session_id, session.pid)
        return session.info()

    def _require(self, session_id: str) -> PTYSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def write(self, session_id: str, data: str | bytes) -> WriteResult:
        """Forward bytes to the session's process, unmodified.

        Raises:
            SessionNotFoundError: Unknown id.
            SessionStateError: The session is not running.
            WriteError: The terminal refused the bytes.
        """
        session = self._require(session_id)
        if session.status != PTYStatus.RUNNING or session.process is None:
            raise SessionStateError(
                f"Cannot write to PTY '{session_id}' - session status is '{session.status}'"
            )
        payload = data.encode("utf-8", errors="replace") if isinstance(data, str) else data
        try:
            written = session.process.write(payload)
        except OSError as e:
            raise WriteError(f"Failed to write to PTY '{session_id}': {e}") from e
        return WriteResult(success=True, bytes=written)

    def read(
        self, session_id: str, offset: int = 0, limit: int | None = None
    ) -> ReadResult | None:
        """Page through committed lines. Returns None for an unknown id."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        page = session.buffer.read(offset, limit)
        return ReadResult(
            lines=page.items,
            total_lines=page.total,
            offset=offset,
            has_more=page.has_more,
            first_line_number=session.buffer.first_line_number,
            status=session.status,
        )

    def search(
        self,
        session_id: str,
        pattern: str | re.Pattern[str],
        offset: int = 0,
        limit: int | None = None,
    ) -> SearchResult | None:
        """Page through lines matching ``pattern``. Returns None for an unknown id."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        matches = session.buffer.search(pattern)
        page = paginate(matches, offset, limit)
        return SearchResult(
            matches=[MatchInfo(line_number=m.line_number, text=m.text) for m in page.items],
            total_matches=page.total,
            total_lines=session.buffer.line_count,
            offset=offset,
            has_more=page.has_more,
            status=session.status,
        )

    def get(self, session_id: str) -> SessionInfo | None:
        """Get a session summary by ID."""
        session = self._sessions.get(session_id)
        return session.info() if session else None

    def list_sessions(self, status: PTYStatus | str | None = None) -> list[SessionInfo]:
        """Snapshot of all sessions, in insertion order."""
        return [
            s.info()
            for s in self._sessions.values()
            if status is None or s.status == status
        ]

    async def kill(self, session_id: str, cleanup: bool = False) -> bool:
        """Kill a session; with ``cleanup`` also drop its buffer and record.

        Returns False only if the id is unknown. Killing an exited or
        already-killed session is a no-op apart from the optional cleanup.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False

        logger.info("Killing PTY session %s (cleanup=%s)", session_id, cleanup)
        if session.status == PTYStatus.RUNNING and session.process is not None:
            try:
                session.process.kill()
            except Exception as e:
                logger.warning("Error killing PTY session %s: %s", session_id, e)
            session.mark_killed()

        if cleanup:
            session.buffer.clear()
            del self._sessions[session_id]
        return True

    async def cleanup_by_owner(self, owner: str) -> int:
        """Kill and remove every session belonging to ``owner``."""
        logger.info("Cleaning up PTY sessions for owner %s", owner)
        ids = [sid for sid, s in self._sessions.items() if s.owner == owner]
        for session_id in ids:
            await self.kill(session_id, cleanup=True)
        return len(ids)

    async def cleanup_all(self) -> int:
        """Kill all sessions. Called on shutdown."""
        ids = list(self._sessions.keys())
        for session_id in ids:
            await self.kill(session_id, cleanup=True)
        logger.info("All PTY sessions cleaned up (%d)", len(ids))
        return len(ids)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
