"""
MCP gateway: serves the capability registry to external AI-agent clients over
HTTP (JSON-RPC 2.0 on POST /mcp, JSON responses only).

Each tool call becomes exactly one outbound native-channel call, made by the
tool implementation through the MessageRouter it was built with.
"""

from __future__ import annotations

import errno
import json
import logging
import time
import uuid
from typing import Any

from aiohttp import web

from .config import HostConfig
from .errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    RESOURCE_NOT_FOUND,
    ListenerBindError,
)
from .server.contract import SESSION_HEADER, initialize_result, select_protocol
from .server.redaction import redact_tool_arguments
from .server.registry import CapabilityRegistry
from .server.types import ToolResult

logger = logging.getLogger("mcp.host.mcp_server")

MCP_PATH = "/mcp"
HEALTH_PATH = "/health"
_ADDR_IN_USE = {errno.EADDRINUSE, 10048}  # 10048: WSAEADDRINUSE
_SHUTDOWN_TIMEOUT = 2.0


def _rpc_result(req_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def _rpc_error(req_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": int(code), "message": message}}


class McpServerManager:
    """Owns the HTTP listener and the capability registry."""

    def __init__(self, config: HostConfig, registry: CapabilityRegistry | None = None) -> None:
        self._config = config
        self.registry = registry or CapabilityRegistry()
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._starting = False
        self._bound_port: int | None = None
        self._started_at_ms: int | None = None
        self._sessions: set[str] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Registration
    # ─────────────────────────────────────────────────────────────────────────

    def register_tool(self, tool: Any) -> None:
        """Register an object exposing `spec()` -> ToolSpec."""
        self.registry.register_tool(tool.spec())
        logger.info("registered tool: %s", tool.name)

    def register_resource(self, resource: Any) -> None:
        """Register an object exposing `uri`, `name`, `description`, `mime_type` and `read(uri)`."""
        self.registry.register_resource(
            resource.uri,
            resource.read,
            name=resource.name,
            description=resource.description,
            mime_type=resource.mime_type,
        )
        logger.info("registered resource: %s", resource.uri)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def port(self) -> int | None:
        return self._bound_port

    def is_running(self) -> bool:
        return self._runner is not None

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running(),
            "host": self._config.bind_host,
            "port": self._bound_port if self._bound_port is not None else self._config.port,
            "tools": self.registry.tool_names,
            "resources": self.registry.resource_uris,
        }

    async def start(self) -> bool:
        """Bind the listener.

        Returns False when already running (or a start is in progress).
        Raises ListenerBindError on bind failure.
        """
        if self._runner is not None or self._starting:
            logger.warning("MCP server already running on port %s", self._bound_port)
            return False

        self._starting = True
        host = self._config.bind_host
        port = int(self._config.port)
        runner = web.AppRunner(
            self._build_app(), handle_signals=False, access_log=None, shutdown_timeout=_SHUTDOWN_TIMEOUT
        )
        try:
            await runner.setup()
            site = web.TCPSite(runner, host, port)
            try:
                await site.start()
            except OSError as exc:
                await runner.cleanup()
                in_use = exc.errno in _ADDR_IN_USE
                raise ListenerBindError(
                    f"MCP server bind failed on {host}:{port}: {exc}", in_use=in_use, port=port
                ) from exc
            except BaseException:
                await runner.cleanup()
                raise
        finally:
            self._starting = False

        self._runner = runner
        self._site = site
        self._bound_port = _first_port(runner.addresses) or port
        self._started_at_ms = int(time.time() * 1000)
        logger.info("MCP HTTP server listening on http://%s:%s%s", host, self._bound_port, MCP_PATH)
        return True

    async def shutdown(self) -> None:
        """Release the listener. Safe to call repeatedly or before start()."""
        runner = self._runner
        self._runner = None
        self._site = None
        self._sessions.clear()
        if runner is None:
            return
        try:
            await runner.cleanup()
        except Exception:
            logger.exception("MCP server cleanup failed")
        logger.info("MCP HTTP server stopped (port %s)", self._bound_port)

    # ─────────────────────────────────────────────────────────────────────────
    # HTTP surface
    # ─────────────────────────────────────────────────────────────────────────

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(MCP_PATH, self._handle_post)
        app.router.add_get(MCP_PATH, self._handle_get)
        app.router.add_delete(MCP_PATH, self._handle_delete)
        app.router.add_get(HEALTH_PATH, self._handle_health)
        return app

    async def _handle_health(self, request: web.Request) -> web.Response:
        _ = request
        return web.json_response({"status": "ok", "startedAtMs": self._started_at_ms, **self.status()})

    async def _handle_get(self, request: web.Request) -> web.Response:
        # No server-initiated SSE stream is offered.
        _ = request
        return web.Response(status=405, headers={"Allow": "POST, DELETE"})

    async def _handle_delete(self, request: web.Request) -> web.Response:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id or session_id not in self._sessions:
            return web.json_response(_rpc_error(None, INVALID_REQUEST, "Session not found"), status=404)
        self._sessions.discard(session_id)
        return web.Response(status=200)

    async def _handle_post(self, request: web.Request) -> web.Response:
        try:
            payload = json.loads(await request.text())
        except ValueError:
            return web.json_response(_rpc_error(None, PARSE_ERROR, "Parse error"), status=400)
        if not isinstance(payload, dict):
            return web.json_response(_rpc_error(None, INVALID_REQUEST, "Invalid Request"), status=400)

        method = payload.get("method")
        if not isinstance(method, str) or not method:
            return web.json_response(_rpc_error(payload.get("id"), INVALID_REQUEST, "Invalid Request"), status=400)

        session_id = request.headers.get(SESSION_HEADER)
        if session_id and method != "initialize" and session_id not in self._sessions:
            return web.json_response(_rpc_error(payload.get("id"), INVALID_REQUEST, "Session not found"), status=404)

        params = payload.get("params")
        params = params if isinstance(params, dict) else {}

        if "id" not in payload:
            logger.debug("mcp notification: %s", method)
            return web.Response(status=202)

        req_id = payload.get("id")
        headers: dict[str, str] = {}
        if method == "initialize":
            new_session = uuid.uuid4().hex
            self._sessions.add(new_session)
            headers[SESSION_HEADER] = new_session

        response = await self.dispatch(method, params, req_id)
        return web.json_response(response, headers=headers)

    async def dispatch(self, method: str, params: dict[str, Any], req_id: Any) -> dict[str, Any]:
        """Dispatch one MCP JSON-RPC request to a response envelope."""
        if method == "initialize":
            protocol = select_protocol(params.get("protocolVersion"))
            return _rpc_result(req_id, initialize_result(protocol, has_resources=bool(self.registry.resource_uris)))
        if method == "ping":
            return _rpc_result(req_id, {})
        if method == "tools/list":
            return _rpc_result(req_id, {"tools": self.registry.list_tools()})
        if method == "tools/call":
            return await self._call_tool(req_id, params)
        if method == "resources/list":
            return _rpc_result(req_id, {"resources": self.registry.list_resources()})
        if method == "resources/read":
            return await self._read_resource(req_id, params)
        return _rpc_error(req_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _call_tool(self, req_id: Any, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not self.registry.has_tool(name):
            return _rpc_error(req_id, INVALID_PARAMS, f"Tool not found: {name}")
        arguments = params.get("arguments")
        arguments = arguments if isinstance(arguments, dict) else {}
        logger.info("tool=%s args=%s", name, redact_tool_arguments(name, arguments))
        try:
            result = await self.registry.call_tool(name, arguments)
        except Exception as exc:
            logger.exception("tool_call_failed tool=%s", name)
            result = ToolResult.error(f"Tool {name} failed: {exc}")
        return _rpc_result(req_id, result.to_call_result())

    async def _read_resource(self, req_id: Any, params: dict[str, Any]) -> dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str) or not self.registry.has_resource(uri):
            return _rpc_error(req_id, RESOURCE_NOT_FOUND, f"Resource not found: {uri}")
        try:
            contents = await self.registry.read_resource(uri)
        except Exception as exc:
            logger.exception("resource_read_failed uri=%s", uri)
            return _rpc_error(req_id, INTERNAL_ERROR, f"Failed to read resource {uri}: {exc}")
        return _rpc_result(req_id, {"contents": [c.to_dict() for c in contents]})


def _first_port(addresses: list[Any]) -> int | None:
    for addr in addresses:
        if isinstance(addr, tuple) and len(addr) >= 2 and isinstance(addr[1], int):
            return addr[1]
    return None
