"""Session daemon — JSON-RPC server owning the PTY session table."""

from ptyskill.daemon.handlers import RpcDispatcher
from ptyskill.daemon.protocol import ErrorCode, RpcError
from ptyskill.daemon.server import DaemonAlreadyRunningError, DaemonServer

__all__ = [
    "DaemonAlreadyRunningError",
    "DaemonServer",
    "ErrorCode",
    "RpcDispatcher",
    "RpcError",
]
