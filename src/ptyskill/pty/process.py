"""PTY process — a child process attached to a pseudo-terminal.

This is the only module that touches file descriptors, process groups and
signals. Everything above it talks to the :class:`PtyHandle` protocol, so
tests can substitute a fake factory.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import time
from typing import Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

OutputCallback = Callable[[bytes], None]
ExitCallback = Callable[[int | None], None]

_READ_SIZE = 65536
_WRITE_TIMEOUT = 2.0
_EXIT_POLL_INTERVAL = 0.05


@runtime_checkable
class PtyHandle(Protocol):
    """What the session manager needs from a running pty process."""

    @property
    def pid(self) -> int: ...

    def write(self, data: bytes) -> int: ...

    def kill(self) -> None: ...


class ProcessFactory(Protocol):
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
    ) -> PtyHandle: ...


def _acquire_controlling_tty() -> None:
    """Runs in the child after setsid(): adopt stdin's pty as the controlling tty.

    Without this, ``\\x03`` written to the master never becomes SIGINT.
    """
    with contextlib.suppress(OSError):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcess:
    """A child process running in its own session on a fresh pty.

    Output is delivered through ``on_output`` from an event-loop reader
    callback, never from a thread, so consumers need no locking. An exit
    watcher polls the child; once it is gone the remaining output is
    drained, the master fd is closed and ``on_exit`` fires exactly once.
    ``on_exit`` is NOT called after :meth:`kill`.

    Uses subprocess.Popen (not os.fork) so the spawn is safe from inside a
    running asyncio loop.
    """

    def __init__(
        self,
        proc: subprocess.Popen,
        master_fd: int,
        loop: asyncio.AbstractEventLoop,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        self._proc = proc
        self._master_fd = master_fd
        self._loop = loop
        self._on_output = on_output
        self._on_exit = on_exit
        self._closed = False
        self._reading = False
        self._watcher: asyncio.Task | None = None

    @classmethod
    def spawn(
        cls,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> PtyProcess:
        """Start ``argv`` on a new pty. Must be called from the event loop thread.

        Raises whatever ``Popen`` raises (FileNotFoundError, PermissionError,
        NotADirectoryError, ...) after releasing both pty fds.
        """
        loop = asyncio.get_running_loop()
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, cols, rows)
            proc = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # Own process group, killable as a tree
                preexec_fn=_acquire_controlling_tty,
                close_fds=True,
                env=env,
                cwd=cwd,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        process = cls(proc, master_fd, loop, on_output, on_exit)
        process._start()
        logger.debug("pty process started: pid=%d argv=%s", proc.pid, argv)
        return process

    def _start(self) -> None:
        self._loop.add_reader(self._master_fd, self._on_readable)
        self._reading = True
        self._watcher = self._loop.create_task(self._watch_exit())

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self._master_fd)
            self._reading = False

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is gone; the watcher reports the exit.
            data = b""
        if data:
            self._on_output(data)
        else:
            self._stop_reading()

    def _drain(self) -> None:
        """Deliver whatever output is still queued on the master side."""
        while True:
            try:
                data = os.read(self._master_fd, _READ_SIZE)
            except OSError:
                return
            if not data:
                return
            self._on_output(data)

    async def _watch_exit(self) -> None:
        while (code := self._proc.poll()) is None:
            await asyncio.sleep(_EXIT_POLL_INTERVAL)
        if self._closed:
            return
        self._stop_reading()
        self._drain()
        self._close_fd()
        logger.debug("pty process %d exited (code=%s)", self._proc.pid, code)
        try:
            self._on_exit(code)
        except Exception:
            logger.exception("Error in on_exit callback for pid %d", self._proc.pid)

    def _close_fd(self) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(OSError):
            os.close(self._master_fd)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def write(self, data: bytes) -> int:
        """Write all of ``data`` to the terminal.

        The master fd is non-blocking; if the child is not consuming input
        this waits up to two seconds for room before raising ``OSError``.
        """
        if self._closed:
            raise OSError(f"pty for pid {self._proc.pid} is closed")
        view = memoryview(data)
        written = 0
        deadline = time.monotonic() + _WRITE_TIMEOUT
        while written < len(data):
            try:
                written += os.write(self._master_fd, view[written:])
                continue
            except BlockingIOError:
                pass
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise OSError(
                    f"terminal input buffer full: wrote {written} of {len(data)} bytes"
                )
            select.select([], [self._master_fd], [], remaining)
        return written

    def kill(self) -> None:
        """Kill the entire process tree and release the pty."""
        if self._closed:
            return

        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
            logger.debug("Killed pty process group %d", self._proc.pid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._proc.pid)
        except OSError as e:
            logger.warning("Error killing pty process %d: %s", self._proc.pid, e)

        if self._watcher is not None:
            self._watcher.cancel()

        # Reap the child (avoids zombies)
        try:
            self._proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("pty process %d did not exit after SIGKILL", self._proc.pid)

        self._stop_reading()
        self._close_fd()
