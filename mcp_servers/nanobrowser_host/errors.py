"""Error taxonomy for the native host.

Recoverable errors stay inside the component that raised them (they become a
protocol error envelope or a log line). Fatal errors end in the full shutdown
sequence.
"""

from __future__ import annotations

from typing import Any

# JSON-RPC style codes, shared by the native channel and the MCP endpoint.
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
TIMEOUT_ERROR = -32000
CONNECTION_CLOSED = -32001
RESOURCE_NOT_FOUND = -32002


class HostError(Exception):
    """Base class for all native host errors."""

    code: int = INTERNAL_ERROR

    def to_error(self) -> dict[str, Any]:
        return {"code": int(self.code), "message": str(self)}


class ProtocolFramingError(HostError):
    """Malformed frame on the native channel (fatal to the transport)."""

    code = PARSE_ERROR


class RpcError(HostError):
    """The counterpart answered a call with an error envelope."""

    def __init__(self, message: str, *, code: int = INTERNAL_ERROR, data: Any | None = None) -> None:
        super().__init__(message)
        self.code = int(code)
        self.data = data

    @classmethod
    def from_envelope(cls, error: Any) -> RpcError:
        if isinstance(error, dict):
            try:
                code = int(error.get("code", INTERNAL_ERROR))
            except (TypeError, ValueError):
                code = INTERNAL_ERROR
            message = str(error.get("message") or "RPC request failed")
            return cls(message, code=code, data=error.get("data"))
        if isinstance(error, str) and error:
            return cls(error)
        return cls("RPC request failed")


class RpcTimeoutError(HostError):
    """An outbound call was not answered before its deadline."""

    code = TIMEOUT_ERROR

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"RPC request timeout: {method} did not respond within {timeout:g}s")
        self.method = method
        self.timeout = float(timeout)


class UnknownMethodError(HostError):
    """An inbound call named a method nobody registered."""

    code = METHOD_NOT_FOUND

    def __init__(self, method: str) -> None:
        super().__init__(f"Method not found: {method}")
        self.method = method


class ConnectionClosedError(HostError):
    """The native channel closed while a call was outstanding."""

    code = CONNECTION_CLOSED


class DuplicateInstanceError(HostError):
    """Another live host instance owns the process marker."""

    def __init__(self, pid: int, marker_path: Any) -> None:
        super().__init__(f"Another MCP host instance is already running with PID {pid} ({marker_path})")
        self.pid = int(pid)
        self.marker_path = marker_path


class ListenerBindError(HostError):
    """The MCP HTTP listener could not bind.

    `in_use` marks the recoverable case (address already in use): the host keeps
    serving the native channel without the HTTP gateway.
    """

    def __init__(self, message: str, *, in_use: bool, port: int | None = None) -> None:
        super().__init__(message)
        self.in_use = bool(in_use)
        self.port = port


__all__ = [
    "CONNECTION_CLOSED",
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "RESOURCE_NOT_FOUND",
    "TIMEOUT_ERROR",
    "ConnectionClosedError",
    "DuplicateInstanceError",
    "HostError",
    "ListenerBindError",
    "ProtocolFramingError",
    "RpcError",
    "RpcTimeoutError",
    "UnknownMethodError",
]
