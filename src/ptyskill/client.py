"""Daemon client — talks JSON-RPC to the session daemon over its unix socket.

Every call opens a fresh connection, sends one request line and reads one
response line. The daemon is started on demand by :meth:`ensure_daemon`.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Any

from ptyskill.config import PtySkillConfig
from ptyskill.daemon.protocol import encode, make_request
from ptyskill.daemon.server import MAX_LINE_BYTES, pid_alive, read_pid_file

logger = logging.getLogger(__name__)


class ClientError(Exception):
    """Base class for client-side failures."""


class RemoteError(ClientError):
    """The daemon answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class DaemonTimeoutError(ClientError):
    pass


class DaemonConnectionError(ClientError):
    pass


class DaemonStartError(ClientError):
    pass


@dataclass
class DaemonStatus:
    running: bool
    pid: int | None = None


class DaemonClient:
    """Client for the session daemon.

    Request ids increase monotonically per client instance. A call that
    times out locally abandons its connection; the daemon still finishes
    the request and its response is discarded.
    """

    def __init__(self, config: PtySkillConfig | None = None) -> None:
        self.config = config or PtySkillConfig.load()
        self._ids = itertools.count(1)
        self._daemon_proc: subprocess.Popen | None = None

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Call a daemon method and return its ``result``.

        Raises:
            RemoteError: The daemon returned an error response.
            DaemonTimeoutError: No response within ``timeout`` seconds.
            DaemonConnectionError: The socket could not be reached or broke.
            ClientError: The response was not valid JSON-RPC.
        """
        if timeout is None:
            timeout = self.config.client.call_timeout
        request = make_request(method, params, next(self._ids))
        try:
            response = await asyncio.wait_for(self._roundtrip(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DaemonTimeoutError(f"Request timed out after {timeout}s: {method}") from e

        if not isinstance(response, dict):
            raise ClientError("Invalid response from daemon")
        err = response.get("error")
        if err is not None:
            if not isinstance(err, dict):
                raise ClientError("Invalid response from daemon")
            try:
                code = int(err.get("code", 0))
            except (TypeError, ValueError) as e:
                raise ClientError("Invalid response from daemon") from e
            raise RemoteError(code, str(err.get("message", "")), err.get("data"))
        if "result" not in response:
            raise ClientError("Invalid response from daemon")
        return response["result"]

    async def _roundtrip(self, request: dict[str, Any]) -> Any:
        try:
            reader, writer = await asyncio.open_unix_connection(
                str(self.config.socket), limit=MAX_LINE_BYTES
            )
        except OSError as e:
            raise DaemonConnectionError(f"Cannot connect to daemon: {e}") from e

        try:
            writer.write(encode(request))
            await writer.drain()
            while True:
                line = await reader.readline()
                if not line:
                    raise DaemonConnectionError("Daemon closed the connection")
                if line.strip():
                    break
            try:
                return json.loads(line)
            except json.JSONDecodeError as e:
                raise ClientError("Invalid response from daemon") from e
        except (ConnectionError, ValueError) as e:
            # ValueError: response line longer than the stream limit
            raise DaemonConnectionError(f"Connection to daemon failed: {e}") from e
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def ping(self) -> bool:
        """Whether the daemon answers a ping. Never raises."""
        try:
            result = await self.call("ping", {}, timeout=self.config.client.ping_timeout)
        except Exception:
            return False
        return isinstance(result, dict) and result.get("pong") is True

    async def status(self) -> DaemonStatus:
        """Ping result combined with the pid file."""
        if not await self.ping():
            return DaemonStatus(running=False)
        return DaemonStatus(running=True, pid=await read_pid_file(self.config.pid_file))

    async def start_daemon(self) -> None:
        """Start the daemon detached, then poll ping until it answers.

        Readiness contract: the daemon is usable once ``ping`` succeeds;
        this gives it ``start_attempts`` probes ``start_interval`` apart.

        Raises:
            DaemonStartError: It never became reachable.
        """
        cfg = self.config
        cfg.config_dir.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, **cfg.to_env()}

        logger.debug("Starting daemon: %s -m ptyskill.daemon", sys.executable)
        with open(cfg.log_file, "ab") as log_f:
            self._daemon_proc = subprocess.Popen(
                [sys.executable, "-m", "ptyskill.daemon"],
                stdin=subprocess.DEVNULL,
                stdout=log_f,
                stderr=log_f,
                env=env,
                cwd=str(cfg.config_dir),
                start_new_session=True,
                close_fds=True,
            )

        for _ in range(cfg.client.start_attempts):
            await asyncio.sleep(cfg.client.start_interval)
            if await self.ping():
                return

        msg = "Failed to start daemon"
        tail = _tail(cfg.log_file, 2000)
        if tail:
            msg += f"; daemon.log tail={tail!r}"
        raise DaemonStartError(msg)

    async def ensure_daemon(self) -> None:
        """Start the daemon unless it already answers."""
        if await self.ping():
            return
        await self.start_daemon()

    async def stop_daemon(self) -> bool:
        """Send SIGTERM to the pid in the pid file. True if a signal was sent."""
        pid = await read_pid_file(self.config.pid_file)
        if pid is None:
            return False
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError:
            return False
        return True

    async def wait_stopped(self, timeout: float = 5.0) -> bool:
        """Poll until the daemon no longer answers and its pid is gone."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if self._daemon_proc is not None:
                # Reap a daemon we started, or it lingers as a zombie
                self._daemon_proc.poll()
            pid = await read_pid_file(self.config.pid_file)
            if not await self.ping() and (pid is None or not pid_alive(pid)):
                return True
            await asyncio.sleep(self.config.client.start_interval)
        return False


def _tail(path: os.PathLike | str, max_bytes: int) -> str:
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - max_bytes))
            return f.read().decode("utf-8", errors="replace").strip()
    except OSError:
        return ""
