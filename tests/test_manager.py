"""Tests for ptyskill.pty.manager.PTYManager and PTYSession."""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import sys
from pathlib import Path

import pytest

from ptyskill.config import BufferConfig
from ptyskill.pty.manager import (
    PTYManager,
    SessionNotFoundError,
    SessionStateError,
    SpawnError,
    WriteError,
)
from ptyskill.pty.session import PTYSession, PTYStatus, generate_session_id

from conftest import FakeFactory


# ---------------------------------------------------------------------------
# PTYSession
# ---------------------------------------------------------------------------


class TestPTYSession:
    def test_id_format(self) -> None:
        session_id = generate_session_id()
        assert re.fullmatch(r"pty_[0-9a-f]{8}", session_id)

    def test_mark_exited_flushes_pending(self) -> None:
        session = PTYSession(id="pty_00000001", command="x")
        session.buffer.append("no newline")
        assert session.mark_exited(3) is True
        assert session.status == PTYStatus.EXITED
        assert session.exit_code == 3
        assert session.buffer.read().items == ["no newline"]

    def test_terminal_states_are_final(self) -> None:
        session = PTYSession(id="pty_00000001", command="x")
        assert session.mark_killed() is True
        assert session.mark_exited(0) is False
        assert session.status == PTYStatus.KILLED
        assert session.exit_code is None

    def test_last_output_line(self) -> None:
        session = PTYSession(id="pty_00000001", command="x")
        session.buffer.append("first\n" + "y" * 300 + "\n\n")
        assert session.last_output_line() == "y" * 250 + "..."

    def test_info_wire_shape(self) -> None:
        session = PTYSession(id="pty_00000001", command="echo", args=["hi"], title="t")
        wire = session.info().to_wire()
        assert wire["id"] == "pty_00000001"
        assert wire["status"] == "running"
        assert wire["lineCount"] == 0
        assert "createdAt" in wire
        assert "exitCode" not in wire
        assert "owner" not in wire


# ---------------------------------------------------------------------------
# PTYManager with a fake process factory
# ---------------------------------------------------------------------------


class TestSpawn:
    async def test_spawn_registers_running_session(
        self, manager: PTYManager, factory: FakeFactory
    ) -> None:
        info = await manager.spawn("bash", ["-l"], workdir="/tmp")
        assert info.status == PTYStatus.RUNNING
        assert info.title == "bash -l"
        assert info.pid == factory.last.pid
        assert factory.calls[0]["argv"] == ["bash", "-l"]
        assert factory.calls[0]["cwd"] == "/tmp"
        assert (factory.calls[0]["cols"], factory.calls[0]["rows"]) == (120, 40)
        assert info.id in manager
        assert len(manager) == 1

    async def test_env_merged_over_daemon_env(
        self, manager: PTYManager, factory: FakeFactory
    ) -> None:
        await manager.spawn("env", env={"FOO": "bar", "TERM": "dumb"})
        env = factory.calls[0]["env"]
        assert env["FOO"] == "bar"
        assert env["TERM"] == "dumb"
        assert env.get("PATH") == os.environ.get("PATH")

    async def test_default_term(self, manager: PTYManager, factory: FakeFactory) -> None:
        await manager.spawn("env")
        assert factory.calls[0]["env"]["TERM"] == "xterm-256color"

    async def test_explicit_title_and_metadata(self, manager: PTYManager) -> None:
        info = await manager.spawn("sleep", ["5"], title="nap", description="d", owner="o1")
        assert (info.title, info.description, info.owner) == ("nap", "d", "o1")

    async def test_spawn_failure_registers_nothing(
        self, manager: PTYManager, factory: FakeFactory
    ) -> None:
        factory.error = FileNotFoundError("no such file")
        with pytest.raises(SpawnError, match="no such file"):
            await manager.spawn("nope")
        assert len(manager) == 0

    async def test_ids_unique(self, manager: PTYManager) -> None:
        ids = {(await manager.spawn("true")).id for _ in range(20)}
        assert len(ids) == 20


class TestWrite:
    async def test_write_forwards_bytes(self, manager: PTYManager, factory: FakeFactory) -> None:
        info = await manager.spawn("cat")
        result = manager.write(info.id, "hi\n")
        assert result.success is True
        assert result.bytes == 3
        assert factory.last.writes == [b"hi\n"]

    async def test_write_counts_utf8_bytes(self, manager: PTYManager) -> None:
        info = await manager.spawn("cat")
        assert manager.write(info.id, "✓").bytes == 3

    async def test_write_unknown(self, manager: PTYManager) -> None:
        with pytest.raises(SessionNotFoundError):
            manager.write("pty_missing", "x")

    async def test_write_after_exit(self, manager: PTYManager, factory: FakeFactory) -> None:
        info = await manager.spawn("true")
        factory.last.emit_exit(0)
        with pytest.raises(SessionStateError, match="exited"):
            manager.write(info.id, "x")

    async def test_write_failure(self, manager: PTYManager, factory: FakeFactory) -> None:
        info = await manager.spawn("cat")
        factory.last.fail_writes = True
        with pytest.raises(WriteError):
            manager.write(info.id, "x")


class TestReadAndSearch:
    async def test_read_pages(self, manager: PTYManager, factory: FakeFactory) -> None:
        info = await manager.spawn("seq")
        factory.last.emit_output("".join(f"{i}\n" for i in range(1, 11)))
        result = manager.read(info.id, offset=2, limit=3)
        assert result is not None
        assert result.lines == ["3", "4", "5"]
        assert result.total_lines == 10
        assert result.has_more is True
        assert result.to_wire()["kind"] == "read"

    async def test_read_unknown_returns_none(self, manager: PTYManager) -> None:
        assert manager.read("pty_missing") is None
        assert manager.search("pty_missing", "x") is None

    async def test_search_paginates_over_matches(
        self, manager: PTYManager, factory: FakeFactory
    ) -> None:
        info = await manager.spawn("seq")
        factory.last.emit_output("".join(f"line {i}\n" for i in range(1, 21)))
        result = manager.search(info.id, re.compile(r"[05]$"), offset=1, limit=2)
        assert result is not None
        assert [(m.line_number, m.text) for m in result.matches] == [
            (10, "line 10"),
            (15, "line 15"),
        ]
        assert result.total_matches == 4
        assert result.total_lines == 20
        assert result.has_more is True
        wire = result.to_wire()
        assert wire["kind"] == "search"
        assert wire["matches"][0] == {"lineNumber": 10, "text": "line 10"}

    async def test_exit_flushes_and_reports(self, factory: FakeFactory) -> None:
        exited: list[PTYSession] = []
        manager = PTYManager(process_factory=factory, on_exit=exited.append)
        info = await manager.spawn("sh")
        factory.last.emit_output("partial")
        factory.last.emit_exit(2)
        result = manager.read(info.id)
        assert result is not None
        assert result.lines == ["partial"]
        assert result.status == PTYStatus.EXITED
        assert manager.get(info.id).exit_code == 2
        assert [s.id for s in exited] == [info.id]

    async def test_buffer_config_applies(self, factory: FakeFactory) -> None:
        manager = PTYManager(buffer_config=BufferConfig(max_lines=5), process_factory=factory)
        info = await manager.spawn("seq")
        factory.last.emit_output("".join(f"{i}\n" for i in range(12)))
        assert manager.get(info.id).line_count == 5

    async def test_read_and_search_agree_after_eviction(self, factory: FakeFactory) -> None:
        manager = PTYManager(buffer_config=BufferConfig(max_lines=5), process_factory=factory)
        info = await manager.spawn("seq")
        factory.last.emit_output("".join(f"line {i}\n" for i in range(1, 13)))
        read = manager.read(info.id, offset=1, limit=1)
        assert read.lines == ["line 9"]
        assert read.first_line_number == 8
        assert read.to_wire()["firstLineNumber"] == 8
        [match] = manager.search(info.id, "^line 9$").matches
        assert match.line_number == read.first_line_number + read.offset


class TestListAndKill:
    async def test_list_in_insertion_order(self, manager: PTYManager) -> None:
        ids = [(await manager.spawn("true")).id for _ in range(3)]
        assert [s.id for s in manager.list_sessions()] == ids

    async def test_list_status_filter(self, manager: PTYManager, factory: FakeFactory) -> None:
        first = await manager.spawn("true")
        await manager.spawn("cat")
        factory.processes[0].emit_exit(0)
        assert [s.id for s in manager.list_sessions("exited")] == [first.id]
        assert len(manager.list_sessions(PTYStatus.RUNNING)) == 1

    async def test_kill_retains_session(self, manager: PTYManager, factory: FakeFactory) -> None:
        info = await manager.spawn("sleep", ["100"])
        factory.last.emit_output("tail")
        assert await manager.kill(info.id) is True
        assert factory.last.killed is True
        session = manager.get(info.id)
        assert session.status == PTYStatus.KILLED
        assert manager.read(info.id).lines == ["tail"]

    async def test_late_exit_after_kill_ignored(
        self, manager: PTYManager, factory: FakeFactory
    ) -> None:
        info = await manager.spawn("sleep", ["100"])
        await manager.kill(info.id)
        factory.last.emit_exit(-9)
        assert manager.get(info.id).status == PTYStatus.KILLED

    async def test_kill_exited_does_not_signal(
        self, manager: PTYManager, factory: FakeFactory
    ) -> None:
        info = await manager.spawn("true")
        factory.last.emit_exit(0)
        assert await manager.kill(info.id) is True
        assert factory.last.killed is False
        assert manager.get(info.id).status == PTYStatus.EXITED

    async def test_kill_cleanup_removes(self, manager: PTYManager) -> None:
        info = await manager.spawn("sleep", ["100"])
        assert await manager.kill(info.id, cleanup=True) is True
        assert info.id not in manager
        assert manager.read(info.id) is None

    async def test_kill_unknown(self, manager: PTYManager) -> None:
        assert await manager.kill("pty_missing") is False

    async def test_cleanup_by_owner(self, manager: PTYManager, factory: FakeFactory) -> None:
        await manager.spawn("a", owner="o1")
        keep = await manager.spawn("b", owner="o2")
        await manager.spawn("c", owner="o1")
        assert await manager.cleanup_by_owner("o1") == 2
        assert [s.id for s in manager.list_sessions()] == [keep.id]
        assert factory.processes[0].killed and factory.processes[2].killed

    async def test_cleanup_all(self, manager: PTYManager, factory: FakeFactory) -> None:
        for _ in range(3):
            await manager.spawn("sleep", ["100"])
        assert await manager.cleanup_all() == 3
        assert len(manager) == 0
        assert all(p.killed for p in factory.processes)


# ---------------------------------------------------------------------------
# Real pty processes
# ---------------------------------------------------------------------------


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


@pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX pty")
class TestRealProcesses:
    async def test_echo_hello(self) -> None:
        manager = PTYManager()
        info = await manager.spawn("echo", ["hello"])
        await _wait_for(lambda: manager.get(info.id).status != PTYStatus.RUNNING)
        result = manager.read(info.id)
        assert result.lines == ["hello"]
        assert result.status == PTYStatus.EXITED
        assert manager.get(info.id).exit_code == 0

    async def test_exit_code(self) -> None:
        manager = PTYManager()
        info = await manager.spawn("sh", ["-c", "exit 3"])
        await _wait_for(lambda: manager.get(info.id).status == PTYStatus.EXITED)
        assert manager.get(info.id).exit_code == 3

    async def test_env_and_workdir(self, short_tmp: Path) -> None:
        manager = PTYManager()
        info = await manager.spawn(
            "sh", ["-c", 'echo "$GREETING"; pwd'], workdir=str(short_tmp), env={"GREETING": "hi"}
        )
        await _wait_for(lambda: manager.get(info.id).status == PTYStatus.EXITED)
        lines = manager.read(info.id).lines
        assert lines[0] == "hi"
        assert os.path.realpath(lines[1]) == os.path.realpath(short_tmp)

    async def test_write_reaches_child(self) -> None:
        manager = PTYManager()
        info = await manager.spawn("cat")
        manager.write(info.id, "ping\n")
        await _wait_for(lambda: manager.search(info.id, "^ping$").total_matches >= 2)
        await manager.kill(info.id, cleanup=True)

    async def test_ctrl_c_interrupts(self) -> None:
        manager = PTYManager()
        info = await manager.spawn("sleep", ["100"])
        await asyncio.sleep(0.2)
        manager.write(info.id, "\x03")
        await _wait_for(lambda: manager.get(info.id).status == PTYStatus.EXITED)

    async def test_kill_running(self) -> None:
        manager = PTYManager()
        info = await manager.spawn("sleep", ["100"])
        assert await manager.kill(info.id) is True
        assert manager.get(info.id).status == PTYStatus.KILLED
        with pytest.raises(ProcessLookupError):
            os.kill(info.pid, 0)

    async def test_missing_command(self) -> None:
        manager = PTYManager()
        with pytest.raises(SpawnError):
            await manager.spawn("definitely-not-a-real-command-xyz")
        assert len(manager) == 0

    @pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
    async def test_process_group_killed(self) -> None:
        manager = PTYManager()
        info = await manager.spawn("bash", ["-c", "sleep 100 & echo $!; wait"])
        await _wait_for(lambda: manager.get(info.id).line_count >= 1)
        child_pid = int(manager.read(info.id).lines[0])
        await manager.kill(info.id)
        await _wait_for(lambda: not _alive(child_pid))


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    # Zombies count as gone
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().split()[2] != "Z"
    except OSError:
        return False
