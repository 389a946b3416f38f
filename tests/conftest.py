"""Shared fixtures: a fake process factory and short socket directories."""

from __future__ import annotations

import itertools
import shutil
import tempfile
from pathlib import Path
from typing import Iterator

import pytest

from ptyskill.config import PtySkillConfig
from ptyskill.pty.manager import PTYManager
from ptyskill.pty.process import ExitCallback, OutputCallback

_pids = itertools.count(40_000)


class FakeProcess:
    """In-memory stand-in for PtyProcess that records what it is asked to do."""

    def __init__(self, argv: list[str], on_output: OutputCallback, on_exit: ExitCallback) -> None:
        self.argv = argv
        self.on_output = on_output
        self.on_exit = on_exit
        self.writes: list[bytes] = []
        self.killed = False
        self.fail_writes = False
        self._pid = next(_pids)

    @property
    def pid(self) -> int:
        return self._pid

    def write(self, data: bytes) -> int:
        if self.fail_writes:
            raise OSError("terminal input buffer full")
        self.writes.append(data)
        return len(data)

    def kill(self) -> None:
        self.killed = True

    def emit_output(self, data: bytes | str) -> None:
        self.on_output(data.encode() if isinstance(data, str) else data)

    def emit_exit(self, code: int | None = 0) -> None:
        self.on_exit(code)


class FakeFactory:
    """Process factory that hands out FakeProcess instances."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.calls: list[dict] = []
        self.error: Exception | None = None

    def __call__(
        self,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> FakeProcess:
        self.calls.append({"argv": argv, "cwd": cwd, "env": env, "cols": cols, "rows": rows})
        if self.error is not None:
            raise self.error
        process = FakeProcess(argv, on_output, on_exit)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def manager(factory: FakeFactory) -> PTYManager:
    return PTYManager(process_factory=factory)


@pytest.fixture
def short_tmp() -> Iterator[Path]:
    """Temp dir under /tmp; pytest's tmp_path can exceed the AF_UNIX path limit."""
    path = Path(tempfile.mkdtemp(prefix="pty", dir="/tmp"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def config(short_tmp: Path) -> PtySkillConfig:
    return PtySkillConfig(home_dir=str(short_tmp))
