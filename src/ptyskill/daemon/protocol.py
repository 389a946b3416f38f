"""JSON-RPC 2.0 protocol — envelope, error codes, method parameters.

One UTF-8 JSON object per line, newline-terminated:

    request:  {"jsonrpc": "2.0", "method": ..., "params": {...}, "id": ...}
    success:  {"jsonrpc": "2.0", "result": ..., "id": ...}
    error:    {"jsonrpc": "2.0", "error": {"code", "message", "data"?}, "id": ... | null}
"""

from __future__ import annotations

import enum
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

JSONRPC_VERSION = "2.0"

RequestId = int | float | str | None


class ErrorCode(enum.IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    # Server-defined
    SESSION_NOT_FOUND = -32000
    SPAWN_FAILED = -32001
    WRITE_FAILED = -32002


class RpcError(Exception):
    """An error that maps directly onto a JSON-RPC error object."""

    def __init__(self, code: ErrorCode | int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = int(code)
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        err: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            err["data"] = self.data
        return err


def success(request_id: RequestId, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id}


def error(
    request_id: RequestId, code: ErrorCode | int, message: str, data: Any = None
) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "error": RpcError(code, message, data).to_dict(),
        "id": request_id,
    }


def make_request(method: str, params: dict[str, Any] | None, request_id: RequestId) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "method": method,
        "params": params or {},
        "id": request_id,
    }


def encode(message: dict[str, Any]) -> bytes:
    """Serialize one message as a newline-terminated UTF-8 line."""
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


# ---------------------------------------------------------------------------
# Method parameters
# ---------------------------------------------------------------------------


class Params(BaseModel):
    """Base for method params: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EmptyParams(Params):
    pass


class SpawnParams(Params):
    command: str = Field(min_length=1, description="Executable to run")
    args: list[str] = Field(default_factory=list)
    workdir: str | None = None
    env: dict[str, str] | None = None
    title: str | None = None
    description: str | None = None
    owner: str | None = Field(
        default=None, description="Owning context id, for bulk cleanup"
    )


class WriteParams(Params):
    id: str = Field(min_length=1)
    data: str = Field(description="Input; escape sequences are decoded by the daemon")


class ReadParams(Params):
    id: str = Field(min_length=1)
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=0)
    pattern: str | None = None
    ignore_case: bool = Field(default=False, alias="ignoreCase")


class ListParams(Params):
    status: str | None = None


class KillParams(Params):
    id: str = Field(min_length=1)
    cleanup: bool = False


class CleanupParams(Params):
    owner: str = Field(min_length=1)
