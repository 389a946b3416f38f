"""PTY session — one managed child process plus its captured output."""

from __future__ import annotations

import enum
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ptyskill.pty.buffer import LineBuffer
from ptyskill.pty.process import PtyHandle


class PTYStatus(enum.StrEnum):
    """Lifecycle states for a PTY session.

    RUNNING is the only non-terminal state; a session moves to EXITED when
    its process ends on its own, or to KILLED when a caller kills it.
    """

    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


def generate_session_id() -> str:
    """Fixed-length random id: ``pty_`` followed by 8 hex digits."""
    return f"pty_{secrets.token_hex(4)}"


class WireModel(BaseModel):
    """Base for models serialized onto the wire with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SessionInfo(WireModel):
    """Public summary of a session, as returned by spawn/list/kill."""

    id: str
    title: str
    description: str | None = None
    command: str
    args: list[str] = Field(default_factory=list)
    workdir: str
    status: PTYStatus
    exit_code: int | None = None
    pid: int
    created_at: datetime
    line_count: int = 0
    owner: str | None = None


@dataclass
class PTYSession:
    """A session record in the session table.

    Owns its :class:`LineBuffer` and its process handle exclusively.
    ``exit_code`` is set iff ``status`` is EXITED.
    """

    id: str
    command: str
    args: list[str] = field(default_factory=list)
    workdir: str = "."
    env: dict[str, str] | None = None
    title: str = ""
    description: str | None = None
    owner: str | None = None
    buffer: LineBuffer = field(default_factory=LineBuffer)
    process: PtyHandle | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: PTYStatus = PTYStatus.RUNNING
    exit_code: int | None = None

    @property
    def alive(self) -> bool:
        return self.status == PTYStatus.RUNNING

    @property
    def pid(self) -> int:
        return self.process.pid if self.process is not None else 0

    def mark_exited(self, exit_code: int | None) -> bool:
        """Record a natural exit. No-op (returns False) unless still running."""
        if self.status != PTYStatus.RUNNING:
            return False
        self.buffer.flush()
        self.status = PTYStatus.EXITED
        self.exit_code = exit_code
        return True

    def mark_killed(self) -> bool:
        """Record an explicit kill. No-op (returns False) unless still running."""
        if self.status != PTYStatus.RUNNING:
            return False
        self.buffer.flush()
        self.status = PTYStatus.KILLED
        return True

    def last_output_line(self, max_length: int = 250) -> str:
        """The most recent non-blank committed line, truncated."""
        for line in reversed(self.buffer.read().items):
            if line.strip():
                return line[:max_length] + "..." if len(line) > max_length else line
        return ""

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            title=self.title,
            description=self.description,
            command=self.command,
            args=list(self.args),
            workdir=self.workdir,
            status=self.status,
            exit_code=self.exit_code,
            pid=self.pid,
            created_at=self.created_at,
            line_count=self.buffer.line_count,
            owner=self.owner,
        )
