"""Configuration — Pydantic models for ptyskill settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class BufferConfig(BaseModel):
    """Per-session output buffer configuration."""

    max_lines: int = Field(
        default=50_000,
        ge=1,
        description="Lines retained per session before the oldest are evicted",
    )


class TerminalConfig(BaseModel):
    """Geometry and terminal type handed to every spawned pty."""

    cols: int = Field(default=120, ge=1)
    rows: int = Field(default=40, ge=1)
    term: str = Field(
        default="xterm-256color",
        description="TERM value set for children unless their env overrides it",
    )


class ClientConfig(BaseModel):
    """Client-side timeouts. The daemon itself applies none."""

    call_timeout: float = Field(default=30.0, gt=0, description="Seconds per RPC call")
    ping_timeout: float = Field(default=1.0, gt=0)
    start_attempts: int = Field(
        default=50, ge=1, description="Readiness probes after starting the daemon"
    )
    start_interval: float = Field(
        default=0.1, gt=0, description="Seconds between readiness probes"
    )


class PtySkillConfig(BaseModel):
    """Top-level ptyskill configuration."""

    home_dir: str = Field(
        default="~/.pty-skill",
        description="Directory holding the socket, pid file and daemon log",
    )
    socket_path: str | None = Field(
        default=None, description="Override for the daemon socket path"
    )
    default_read_limit: int = Field(default=500, ge=1)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    @property
    def config_dir(self) -> Path:
        return Path(os.path.expanduser(self.home_dir))

    @property
    def socket(self) -> Path:
        if self.socket_path:
            return Path(os.path.expanduser(self.socket_path))
        return self.config_dir / "daemon.sock"

    @property
    def pid_file(self) -> Path:
        return self.config_dir / "daemon.pid"

    @property
    def log_file(self) -> Path:
        return self.config_dir / "daemon.log"

    def to_env(self) -> dict[str, str]:
        """Environment overrides that make another process resolve the same paths."""
        env = {"PTY_SKILL_HOME": str(self.config_dir)}
        if self.socket_path:
            env["PTY_SKILL_SOCKET"] = str(self.socket)
        return env

    @classmethod
    def load(cls, config_path: str | None = None) -> PtySkillConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        The config file is ``config_path`` if given, otherwise
        ``<home>/config.json`` when it exists.

        Env vars:
            PTY_SKILL_HOME          - Config directory (socket, pid file, log)
            PTY_SKILL_SOCKET        - Override the daemon socket path
            PTY_SKILL_MAX_LINES     - Per-session buffer capacity
            PTY_SKILL_CALL_TIMEOUT  - Client RPC timeout in seconds
        """
        config_data: dict[str, Any] = {}

        env_home = os.environ.get("PTY_SKILL_HOME")
        if config_path is None:
            home = os.path.expanduser(env_home or cls.model_fields["home_dir"].default)
            candidate = os.path.join(home, "config.json")
            if os.path.exists(candidate):
                config_path = candidate

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        if env_home:
            config_data["home_dir"] = env_home

        env_socket = os.environ.get("PTY_SKILL_SOCKET")
        if env_socket:
            config_data["socket_path"] = env_socket

        env_max_lines = os.environ.get("PTY_SKILL_MAX_LINES")
        if env_max_lines:
            buffer = config_data.get("buffer", {})
            buffer["max_lines"] = int(env_max_lines)
            config_data["buffer"] = buffer

        env_call_timeout = os.environ.get("PTY_SKILL_CALL_TIMEOUT")
        if env_call_timeout:
            client = config_data.get("client", {})
            client["call_timeout"] = float(env_call_timeout)
            config_data["client"] = client

        return cls.model_validate(config_data)
