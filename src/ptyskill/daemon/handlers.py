"""RPC dispatch — route JSON-RPC requests to the session table."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from ptyskill.daemon.escapes import decode_escapes
from ptyskill.daemon.protocol import (
    JSONRPC_VERSION,
    CleanupParams,
    EmptyParams,
    ErrorCode,
    KillParams,
    ListParams,
    ReadParams,
    RpcError,
    SpawnParams,
    WriteParams,
    error,
    success,
)
from ptyskill.pty.manager import (
    PTYManager,
    SessionNotFoundError,
    SessionStateError,
    SpawnError,
    WriteError,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]

DEFAULT_READ_LIMIT = 500


class RpcDispatcher:
    """Validates requests, calls the matching handler, and shapes the response.

    Every failure inside a handler becomes a structured error response;
    nothing raised here ever escapes to the connection loop. Exactly one
    response dict is produced per request.
    """

    def __init__(
        self,
        manager: PTYManager,
        default_read_limit: int = DEFAULT_READ_LIMIT,
        started_at: float | None = None,
    ) -> None:
        self._manager = manager
        self._default_read_limit = default_read_limit
        self._started_at = time.monotonic() if started_at is None else started_at
        self._methods: dict[str, tuple[type[BaseModel], Handler]] = {
            "spawn": (SpawnParams, self._spawn),
            "write": (WriteParams, self._write),
            "read": (ReadParams, self._read),
            "list": (ListParams, self._list),
            "kill": (KillParams, self._kill),
            "cleanup": (CleanupParams, self._cleanup),
            "status": (EmptyParams, self._status),
            "ping": (EmptyParams, self._ping),
        }

    @property
    def methods(self) -> list[str]:
        return list(self._methods)

    async def handle_line(self, line: str | bytes) -> dict[str, Any] | None:
        """Parse one request line and return its response (None for a blank line)."""
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        if not line.strip():
            return None
        try:
            request = json.loads(line)
        except json.JSONDecodeError:
            return error(None, ErrorCode.PARSE_ERROR, "Parse error")
        return await self.dispatch(request)

    async def dispatch(self, request: Any) -> dict[str, Any]:
        """Dispatch one decoded request object."""
        if not isinstance(request, dict):
            return error(None, ErrorCode.INVALID_REQUEST, "Invalid JSON-RPC request")

        request_id = request.get("id")
        if not isinstance(request_id, (int, float, str)) or isinstance(request_id, bool):
            request_id = None

        method = request.get("method")
        if request.get("jsonrpc") != JSONRPC_VERSION or not isinstance(method, str) or not method:
            return error(request_id, ErrorCode.INVALID_REQUEST, "Invalid JSON-RPC request")

        entry = self._methods.get(method)
        if entry is None:
            return error(request_id, ErrorCode.METHOD_NOT_FOUND, f"Method '{method}' not found")
        param_model, handler = entry

        raw_params = request.get("params")
        if raw_params is None:
            raw_params = {}
        if not isinstance(raw_params, dict):
            return error(request_id, ErrorCode.INVALID_PARAMS, "params must be an object")

        try:
            params = param_model.model_validate(raw_params)
        except ValidationError as e:
            return error(request_id, ErrorCode.INVALID_PARAMS, _describe_validation(e))

        try:
            result = await handler(params)
        except RpcError as e:
            return error(request_id, e.code, e.message, e.data)
        except SessionNotFoundError as e:
            return error(request_id, ErrorCode.SESSION_NOT_FOUND, str(e))
        except SpawnError as e:
            return error(request_id, ErrorCode.SPAWN_FAILED, str(e))
        except (SessionStateError, WriteError) as e:
            return error(request_id, ErrorCode.WRITE_FAILED, str(e))
        except Exception as e:
            logger.error("RPC %s failed: %s", method, e, exc_info=True)
            return error(request_id, ErrorCode.INTERNAL_ERROR, str(e) or type(e).__name__)
        return success(request_id, result)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _spawn(self, params: SpawnParams) -> dict[str, Any]:
        info = await self._manager.spawn(
            command=params.command,
            args=params.args,
            workdir=params.workdir,
            env=params.env,
            title=params.title,
            description=params.description,
            owner=params.owner,
        )
        return info.to_wire()

    async def _write(self, params: WriteParams) -> dict[str, Any]:
        data = decode_escapes(params.data)
        result = self._manager.write(params.id, data)
        return {"success": result.success, "bytes": result.bytes}

    async def _read(self, params: ReadParams) -> dict[str, Any]:
        if params.id not in self._manager:
            raise SessionNotFoundError(params.id)

        limit = self._default_read_limit if params.limit is None else params.limit

        if params.pattern:
            flags = re.IGNORECASE if params.ignore_case else 0
            try:
                regex = re.compile(params.pattern, flags)
            except re.error as e:
                raise RpcError(
                    ErrorCode.INVALID_PARAMS,
                    f"Invalid regex pattern '{params.pattern}': {e}",
                ) from e
            search = self._manager.search(params.id, regex, params.offset, limit)
            if search is None:
                raise SessionNotFoundError(params.id)
            return search.to_wire()

        result = self._manager.read(params.id, params.offset, limit)
        if result is None:
            raise SessionNotFoundError(params.id)
        return result.to_wire()

    async def _list(self, params: ListParams) -> list[dict[str, Any]]:
        return [info.to_wire() for info in self._manager.list_sessions(params.status)]

    async def _kill(self, params: KillParams) -> dict[str, Any]:
        if params.id not in self._manager:
            raise SessionNotFoundError(params.id)
        killed = await self._manager.kill(params.id, cleanup=params.cleanup)
        session = None if params.cleanup else self._manager.get(params.id)
        return {
            "success": killed,
            "session": session.to_wire() if session is not None else None,
        }

    async def _cleanup(self, params: CleanupParams) -> dict[str, Any]:
        killed = await self._manager.cleanup_by_owner(params.owner)
        return {"killed": killed}

    async def _status(self, params: EmptyParams) -> dict[str, Any]:
        return {
            "running": True,
            "sessions": len(self._manager),
            "uptimeSeconds": round(time.monotonic() - self._started_at, 3),
        }

    async def _ping(self, params: EmptyParams) -> dict[str, Any]:
        return {"pong": True}


def _describe_validation(e: ValidationError) -> str:
    problems = []
    for err in e.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid params: " + "; ".join(problems)
