"""CLI entry point for ptyskill."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, TypeVar

import aiofiles
import typer

from ptyskill import __version__
from ptyskill.client import ClientError, DaemonClient
from ptyskill.config import PtySkillConfig
from ptyskill.daemon.escapes import decode_escapes, describe_control

T = TypeVar("T")

MAX_LINE_LENGTH = 2000
LOG_TAIL_LINES = 50

app = typer.Typer(
    name="pty-skill",
    help="Interactive PTY management for AI agents.",
    no_args_is_help=True,
)
daemon_app = typer.Typer(help="Manage the session daemon.", no_args_is_help=True)
app.add_typer(daemon_app, name="daemon")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _client() -> DaemonClient:
    return DaemonClient(PtySkillConfig.load())


def _run(coro_fn: Callable[[DaemonClient], Awaitable[T]]) -> T:
    """Run one client interaction, turning client errors into exit code 1."""
    client = _client()
    try:
        return asyncio.run(coro_fn(client))
    except ClientError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


async def _call(client: DaemonClient, method: str, params: dict[str, Any]) -> Any:
    await client.ensure_daemon()
    return await client.call(method, params)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _clip(text: str) -> str:
    return text[:MAX_LINE_LENGTH] + "..." if len(text) > MAX_LINE_LENGTH else text


# ---------------------------------------------------------------------------
# Human-readable formatting
# ---------------------------------------------------------------------------


def format_read_result(session_id: str, result: dict[str, Any], pattern: str | None = None) -> str:
    """Render a read or search result as a ``<pty_output>`` block."""
    status = result.get("status", "")
    out: list[str] = []

    if result.get("kind") == "search":
        out.append(f'<pty_output id="{session_id}" status="{status}" pattern="{pattern}">')
        matches = result.get("matches", [])
        if not matches:
            out.append(f"No lines matched the pattern '{pattern}'.")
            out.append(f"Total lines in buffer: {result['totalLines']}")
            out.append("</pty_output>")
            return "\n".join(out)
        for match in matches:
            out.append(f"{match['lineNumber']:05d}| {_clip(match['text'])}")
        out.append("")
        total = result["totalMatches"]
        if result["hasMore"]:
            next_offset = result["offset"] + len(matches)
            out.append(
                f"({len(matches)} of {total} matches shown. "
                f"Use --offset={next_offset} to see more.)"
            )
        else:
            plural = "" if total == 1 else "es"
            out.append(f"({total} match{plural} from {result['totalLines']} total lines)")
        out.append("</pty_output>")
        return "\n".join(out)

    out.append(f'<pty_output id="{session_id}" status="{status}">')
    lines = result.get("lines", [])
    if not lines:
        out.append("(No output available - buffer is empty)")
        out.append(f"Total lines: {result['totalLines']}")
        out.append("</pty_output>")
        return "\n".join(out)
    offset = result["offset"]
    first = result.get("firstLineNumber", 1) + offset
    for i, line in enumerate(lines):
        out.append(f"{first + i:05d}| {_clip(line)}")
    out.append("")
    end = offset + len(lines)
    if result["hasMore"]:
        out.append(f"(Buffer has more lines. Use --offset={end} to read beyond line {end})")
    else:
        out.append(f"(End of buffer - total {result['totalLines']} lines)")
    out.append("</pty_output>")
    return "\n".join(out)


def format_session(info: dict[str, Any]) -> str:
    exit_info = f" (exit: {info['exitCode']})" if "exitCode" in info else ""
    command = " ".join([info["command"], *info.get("args", [])])
    return "\n".join(
        [
            f"[{info['id']}] {info['title']}",
            f"  Command: {command}",
            f"  Status: {info['status']}{exit_info}",
            f"  PID: {info['pid']} | Lines: {info['lineCount']} | Workdir: {info['workdir']}",
            f"  Created: {info['createdAt']}",
        ]
    )


def parse_env_pairs(pairs: list[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` strings; entries without a key are ignored."""
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if sep and key:
            env[key] = value
    return env


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


@app.command(context_settings={"allow_interspersed_args": False})
def spawn(
    command: str = typer.Argument(help="Command to run."),
    args: list[str] = typer.Argument(None, help="Arguments for the command."),
    workdir: str | None = typer.Option(None, "--workdir", "-w", help="Working directory."),
    env: list[str] = typer.Option(None, "--env", "-e", help="KEY=VALUE, repeatable."),
    title: str | None = typer.Option(None, "--title", "-t", help="Session title."),
    description: str | None = typer.Option(None, "--description", "-d", help="Free-form note."),
    owner: str | None = typer.Option(None, "--owner", help="Owner id for bulk cleanup."),
    as_json: bool = typer.Option(False, "--json", "-j", help="Print raw JSON."),
) -> None:
    """Start a new PTY session."""
    params: dict[str, Any] = {
        "command": command,
        "args": list(args or []),
        "workdir": workdir or os.getcwd(),
        "title": title,
        "description": description,
        "owner": owner,
    }
    env_map = parse_env_pairs(list(env or []))
    if env_map:
        params["env"] = env_map
    params = {k: v for k, v in params.items() if v is not None}

    result = _run(lambda c: _call(c, "spawn", params))
    if as_json:
        _echo_json(result)
        return
    typer.echo(f"Spawned PTY session: {result['id']}")
    typer.echo(f"  Title: {result['title']}")
    typer.echo(f"  Command: {' '.join([result['command'], *result['args']])}")
    typer.echo(f"  PID: {result['pid']}")
    typer.echo(f"  Workdir: {result['workdir']}")


@app.command()
def read(
    session_id: str = typer.Argument(help="PTY session ID."),
    offset: int = typer.Option(0, "--offset", "-o", min=0, help="Line (or match) offset."),
    limit: int = typer.Option(500, "--limit", "-l", min=0, help="Maximum lines to return."),
    pattern: str | None = typer.Option(None, "--pattern", "-p", help="Regex filter."),
    ignore_case: bool = typer.Option(False, "--ignore-case", "-i", help="Case-insensitive pattern."),
    as_json: bool = typer.Option(False, "--json", "-j", help="Print raw JSON."),
) -> None:
    """Read output from a PTY session."""
    params: dict[str, Any] = {"id": session_id, "offset": offset, "limit": limit}
    if pattern:
        params["pattern"] = pattern
        params["ignoreCase"] = ignore_case
    result = _run(lambda c: _call(c, "read", params))
    if as_json:
        _echo_json(result)
        return
    typer.echo(format_read_result(session_id, result, pattern))


@app.command()
def write(
    session_id: str = typer.Argument(help="PTY session ID."),
    data: str = typer.Argument(help=r'Input to send; escapes like "\n" and "\x03" are decoded.'),
    as_json: bool = typer.Option(False, "--json", "-j", help="Print raw JSON."),
) -> None:
    """Send input to a PTY session."""
    result = _run(lambda c: _call(c, "write", {"id": session_id, "data": data}))
    if as_json:
        _echo_json(result)
        return
    preview = describe_control(decode_escapes(data))
    typer.echo(f'Sent {result["bytes"]} bytes to {session_id}: "{preview}"')


@app.command("list")
def list_sessions(
    status: str | None = typer.Option(None, "--status", "-s", help="Only sessions in this state."),
    as_json: bool = typer.Option(False, "--json", "-j", help="Print raw JSON."),
) -> None:
    """List all PTY sessions."""
    params = {"status": status} if status else {}
    sessions = _run(lambda c: _call(c, "list", params))
    if as_json:
        _echo_json(sessions)
        return
    typer.echo("<pty_list>")
    if not sessions:
        typer.echo("No active PTY sessions.")
    else:
        for info in sessions:
            typer.echo(format_session(info))
            typer.echo("")
        typer.echo(f"Total: {len(sessions)} session(s)")
    typer.echo("</pty_list>")


@app.command()
def kill(
    session_id: str = typer.Argument(help="PTY session ID."),
    cleanup: bool = typer.Option(False, "--cleanup", "-c", help="Also drop the session and its output."),
    as_json: bool = typer.Option(False, "--json", "-j", help="Print raw JSON."),
) -> None:
    """Kill a PTY session."""

    async def _kill(client: DaemonClient) -> tuple[dict[str, Any] | None, dict[str, Any]]:
        await client.ensure_daemon()
        sessions = await client.call("list", {})
        before = next((s for s in sessions if s["id"] == session_id), None)
        result = await client.call("kill", {"id": session_id, "cleanup": cleanup})
        return before, result

    before, result = _run(_kill)
    if as_json:
        _echo_json({**result, "sessionBefore": before})
        return
    action = "Killed" if before and before["status"] == "running" else "Cleaned up"
    note = " (session removed)" if cleanup else " (session retained for log access)"
    typer.echo("<pty_killed>")
    typer.echo(f"{action}: {session_id}{note}")
    if before:
        typer.echo(f"Title: {before['title']}")
        typer.echo(f"Final line count: {before['lineCount']}")
    typer.echo("</pty_killed>")


@app.command()
def cleanup(
    owner: str = typer.Argument(help="Owner id whose sessions should be removed."),
) -> None:
    """Kill and remove every session belonging to an owner."""
    result = _run(lambda c: _call(c, "cleanup", {"owner": owner}))
    typer.echo(f"Removed {result['killed']} session(s) owned by {owner}")


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", "-j", help="Print raw JSON."),
) -> None:
    """Check daemon status."""

    async def _status(client: DaemonClient) -> dict[str, Any]:
        daemon = await client.status()
        if not daemon.running:
            return {"running": False}
        info = await client.call("status", {})
        return {**info, "pid": daemon.pid}

    info = _run(_status)
    if as_json:
        _echo_json(info)
        return
    if not info["running"]:
        typer.echo("Daemon is not running.")
        return
    typer.echo("Daemon status:")
    typer.echo("  Running: yes")
    typer.echo(f"  PID: {info['pid']}")
    typer.echo(f"  Sessions: {info['sessions']}")
    typer.echo(f"  Uptime: {int(info['uptimeSeconds'])}s")


# ---------------------------------------------------------------------------
# Daemon lifecycle
# ---------------------------------------------------------------------------


async def _daemon_start(client: DaemonClient) -> None:
    current = await client.status()
    if current.running:
        typer.echo(f"Daemon is already running (PID: {current.pid})")
        return
    typer.echo("Starting daemon...")
    await client.start_daemon()
    started = await client.status()
    typer.echo(f"Daemon started (PID: {started.pid})")


async def _daemon_stop(client: DaemonClient) -> bool:
    current = await client.status()
    if not current.running:
        typer.echo("Daemon is not running.")
        return True
    typer.echo(f"Stopping daemon (PID: {current.pid})...")
    if not await client.stop_daemon() or not await client.wait_stopped():
        typer.echo("Failed to stop daemon.", err=True)
        return False
    typer.echo("Daemon stopped.")
    return True


@daemon_app.command("start")
def daemon_start() -> None:
    """Start the daemon in the background."""
    _run(_daemon_start)


@daemon_app.command("stop")
def daemon_stop() -> None:
    """Stop the daemon (kills every session)."""
    if not _run(_daemon_stop):
        raise typer.Exit(1)


@daemon_app.command("restart")
def daemon_restart() -> None:
    """Stop then start the daemon."""

    async def _restart(client: DaemonClient) -> bool:
        if not await _daemon_stop(client):
            return False
        await _daemon_start(client)
        return True

    if not _run(_restart):
        raise typer.Exit(1)


@daemon_app.command("logs")
def daemon_logs(
    lines: int = typer.Option(LOG_TAIL_LINES, "--lines", "-n", min=1, help="Lines to show."),
) -> None:
    """Show the tail of the daemon log."""
    config = PtySkillConfig.load()
    if not config.log_file.exists():
        typer.echo("No log file found.")
        return

    async def _read() -> list[str]:
        async with aiofiles.open(config.log_file, "r", encoding="utf-8", errors="replace") as f:
            return (await f.read()).strip().split("\n")

    all_lines = asyncio.run(_read())
    for line in all_lines[-lines:]:
        typer.echo(line)
    if len(all_lines) > lines:
        typer.echo(f"\n(Showing last {lines} of {len(all_lines)} lines)")


@daemon_app.command("run")
def daemon_run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Run the daemon in the foreground."""
    from ptyskill.daemon.server import main as daemon_main

    raise typer.Exit(daemon_main(verbose=verbose))


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pty-skill v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V", callback=version_callback, is_eager=True, help="Show version."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    setup_logging(verbose)


if __name__ == "__main__":
    app()
