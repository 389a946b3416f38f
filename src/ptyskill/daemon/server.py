"""Daemon server — the singleton process that owns every PTY session.

Listens on a unix socket for newline-delimited JSON-RPC, serializes all
session-table mutations on one asyncio loop, and guarantees that no
session outlives the daemon: termination always runs, in order,
stop accepting -> kill every session -> remove socket -> remove pid file.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import stat
import sys
from pathlib import Path

import aiofiles

from ptyskill.config import PtySkillConfig
from ptyskill.daemon.handlers import RpcDispatcher
from ptyskill.daemon.protocol import encode
from ptyskill.pty.manager import PTYManager
from ptyskill.pty.session import PTYSession

logger = logging.getLogger(__name__)

# Largest request line accepted (a write payload travels on one line).
MAX_LINE_BYTES = 16 * 1024 * 1024

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class DaemonAlreadyRunningError(RuntimeError):
    def __init__(self, pid: int) -> None:
        super().__init__(f"Daemon is already running (PID: {pid})")
        self.pid = pid


def pid_alive(pid: int) -> bool:
    """Whether a process with this pid exists (best-effort)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


async def read_pid_file(pid_file: Path) -> int | None:
    """Return the pid recorded in ``pid_file``, or None if absent/unparsable."""
    try:
        async with aiofiles.open(pid_file, "r", encoding="utf-8") as f:
            text = await f.read()
    except FileNotFoundError:
        return None
    try:
        return int(text.strip())
    except ValueError:
        return None


async def check_singleton(pid_file: Path) -> None:
    """Refuse to start while another live daemon owns ``pid_file``.

    A stale or unparsable pid file is removed. A live owner leaves the
    file untouched and raises :class:`DaemonAlreadyRunningError`.
    """
    if not pid_file.exists():
        return
    pid = await read_pid_file(pid_file)
    if pid is not None and pid != os.getpid() and pid_alive(pid):
        raise DaemonAlreadyRunningError(pid)
    logger.info("Removing stale pid file %s (pid=%s)", pid_file, pid)
    with contextlib.suppress(FileNotFoundError):
        pid_file.unlink()


def setup_daemon_logging(log_file: Path, verbose: bool = False) -> None:
    """Append daemon logs to ``log_file``, mirrored to stderr when it is a terminal.

    A daemon started by the client already has stderr redirected into
    ``log_file``, so mirroring there would write every record twice.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        logging.FileHandler(log_file, mode="a", encoding="utf-8"),
    ]
    if sys.stderr.isatty():
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


class DaemonServer:
    """The RPC server plus the session table it owns.

    Args:
        config: Paths, buffer and terminal settings.
        manager: Session table to serve. Built from ``config`` if omitted.
    """

    def __init__(
        self,
        config: PtySkillConfig | None = None,
        manager: PTYManager | None = None,
    ) -> None:
        self.config = config or PtySkillConfig.load()
        # PTYManager defines __len__, so an empty table is falsy
        if manager is None:
            manager = PTYManager(
                buffer_config=self.config.buffer,
                terminal_config=self.config.terminal,
                on_exit=_log_exit_summary,
            )
        self.manager = manager
        self.dispatcher = RpcDispatcher(
            self.manager, default_read_limit=self.config.default_read_limit
        )
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[asyncio.StreamWriter] = set()
        self._stop_event = asyncio.Event()
        self._shutdown_done = False

    @property
    def socket_path(self) -> Path:
        return self.config.socket

    @property
    def pid_file(self) -> Path:
        return self.config.pid_file

    async def start(self) -> None:
        """Claim the singleton, bind the socket, write the pid file.

        Raises:
            DaemonAlreadyRunningError: Another live daemon owns the pid file.
            OSError: The socket could not be bound.
        """
        self.config.config_dir.mkdir(parents=True, exist_ok=True)
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        await check_singleton(self.pid_file)

        # Remove stale socket if exists
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=str(self.socket_path),
            limit=MAX_LINE_BYTES,
        )
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600

        async with aiofiles.open(self.pid_file, "w", encoding="utf-8") as f:
            await f.write(str(os.getpid()))

        logger.info("Daemon listening on %s", self.socket_path)
        logger.info("PID: %d", os.getpid())

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Answer every request line on one connection, in order."""
        self._connections.add(writer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    logger.warning("Dropping connection: request line too long")
                    break
                except ConnectionError as e:
                    logger.debug("Connection error: %s", e)
                    break
                if not line:
                    break
                response = await self.dispatcher.handle_line(line)
                if response is None:
                    continue
                writer.write(encode(response))
                await writer.drain()
        except ConnectionError as e:
            logger.debug("Client went away: %s", e)
        finally:
            self._connections.discard(writer)
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    def request_stop(self) -> None:
        """Ask :meth:`serve_forever` to shut down (signal-handler safe)."""
        self._stop_event.set()

    async def serve_forever(self) -> None:
        """Run until SIGTERM/SIGINT (or :meth:`request_stop`), then shut down."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)
        try:
            await self._stop_event.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.shutdown()

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s", sig.name)
        self.request_stop()

    async def shutdown(self) -> None:
        """Stop accepting, kill every session, remove socket then pid file.

        Idempotent; each step runs even if an earlier one failed.
        """
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down daemon...")

        if self._server is not None:
            self._server.close()
            for writer in list(self._connections):
                writer.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for connections to close")

        try:
            await self.manager.cleanup_all()
        except Exception:
            logger.exception("Error while cleaning up sessions")

        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()
        with contextlib.suppress(FileNotFoundError):
            self.pid_file.unlink()
        logger.info("Daemon stopped.")


def _log_exit_summary(session: PTYSession) -> None:
    logger.info(
        "PTY %s (%s) exited with code %s after %d lines; last line: %s",
        session.id,
        session.description or session.title,
        session.exit_code,
        session.buffer.line_count,
        session.last_output_line(),
    )


async def run_daemon(config: PtySkillConfig | None = None) -> int:
    """Start the daemon and serve until terminated. Returns the exit status."""
    server = DaemonServer(config)
    try:
        await server.start()
    except DaemonAlreadyRunningError as e:
        print(str(e), file=sys.stderr)
        return 1
    except OSError as e:
        logger.error("Failed to bind %s: %s", server.socket_path, e)
        await server.shutdown()
        return 1

    await server.serve_forever()
    return 0


def main(verbose: bool = False) -> int:
    """Module entry: ``python -m ptyskill.daemon``."""
    config = PtySkillConfig.load()
    setup_daemon_logging(config.log_file, verbose=verbose)
    return asyncio.run(run_daemon(config))
