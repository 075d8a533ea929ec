"""NativeHost: the one object that wires a running host together.

Owns the native transport, the message router, the MCP gateway and the
lifecycle manager for a single process. Built once by `native_host.main()`.
"""

from __future__ import annotations

import logging
import time
import traceback
from typing import Any

from .config import HOST_NAME, HOST_VERSION, HostConfig
from .errors import ConnectionClosedError
from .lifecycle import ProcessLifecycleManager, ShutdownReason
from .mcp_server import McpServerManager
from .messaging import MessageRouter
from .native_messaging import NativeTransport
from .pid_marker import ProcessMarker
from .resources import CurrentStateResource
from .tools import NavigateToTool, RunTaskTool

logger = logging.getLogger("mcp.host")

_DRAIN_TIMEOUT = 2.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class NativeHost:
    def __init__(
        self,
        config: HostConfig,
        transport: NativeTransport,
        *,
        marker: ProcessMarker | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.config = config
        self.transport = transport
        self.router = MessageRouter(transport, default_timeout=config.rpc_timeout)
        self.gateway = McpServerManager(config)
        self.lifecycle = ProcessLifecycleManager(
            marker=marker or ProcessMarker(config.marker_path),
            gateway=self.gateway,
            install_signal_handlers=install_signal_handlers,
        )

        self.start_time = _now_ms()
        self.last_ping = self.start_time

        transport.on_connection_closed(self._on_channel_closed)
        self._register_native_handlers()
        self._register_capabilities()

        self.lifecycle.add_cleanup("reject-pending-calls", self._reject_pending_calls, before_gateway_stop=True)
        self.lifecycle.add_cleanup("notify-fatal-error", self._notify_fatal_error)
        self.lifecycle.add_cleanup("drain-handlers", self._drain_router)
        self.lifecycle.add_cleanup("close-native-channel", self._close_channel)

    # ─────────────────────────────────────────────────────────────────────────
    # Wiring
    # ─────────────────────────────────────────────────────────────────────────

    def _register_native_handlers(self) -> None:
        self.router.register_handler("init", self._on_init)
        self.router.register_handler("shutdown", self._on_shutdown)
        self.router.register_handler("error", self._on_error)
        self.router.register_handler("heartbeat", self._on_heartbeat)
        self.router.register_rpc_method("ping", self._rpc_ping)
        self.router.register_rpc_method("get_host_status", self._rpc_host_status)

    def _register_capabilities(self) -> None:
        if self.config.extended_capabilities:
            self.gateway.register_resource(CurrentStateResource(self.router))
            self.gateway.register_tool(NavigateToTool(self.router))
        self.gateway.register_tool(RunTaskTool(self.router))

    def status_payload(self) -> dict[str, Any]:
        return {
            "isConnected": not self.transport.closed,
            "startTime": self.start_time,
            "version": HOST_VERSION,
            "runMode": self.config.run_mode,
            "mcpServer": self.gateway.status(),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Native handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_init(self, msg: dict[str, Any]) -> None:
        logger.info("received init from extension")
        await self.router.send_message({"type": "status", "data": self.status_payload()})

    def _on_shutdown(self, msg: dict[str, Any]) -> None:
        logger.info("received shutdown command from extension")
        self.lifecycle.request_shutdown(ShutdownReason.COMMAND, detail="shutdown command")

    def _on_error(self, msg: dict[str, Any]) -> None:
        logger.error("extension reported error: %s", msg.get("error") or msg.get("data") or msg)

    def _on_heartbeat(self, msg: dict[str, Any]) -> None:
        self.last_ping = _now_ms()

    def _rpc_ping(self, params: Any) -> dict[str, Any]:
        self.last_ping = _now_ms()
        return {"timestamp": self.last_ping}

    def _rpc_host_status(self, params: Any) -> dict[str, Any]:
        return {
            "name": HOST_NAME,
            "lastPing": self.last_ping,
            "state": self.lifecycle.state.value,
            "pendingCalls": self.router.pending_count,
            **self.status_payload(),
        }

    def _on_channel_closed(self, reason: str) -> None:
        self.lifecycle.request_shutdown(ShutdownReason.DISCONNECT, detail=f"native channel closed: {reason}")

    # ─────────────────────────────────────────────────────────────────────────
    # Cleanup steps (run in order by the lifecycle manager)
    # ─────────────────────────────────────────────────────────────────────────

    async def _notify_fatal_error(self) -> None:
        exc = self.lifecycle.fatal_error
        if self.lifecycle.reason is not ShutdownReason.FATAL or exc is None or self.transport.closed:
            return
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        try:
            await self.router.send_message({"type": "error", "error": str(exc) or type(exc).__name__, "stack": stack})
        except (ConnectionClosedError, TypeError, ValueError) as send_exc:
            logger.debug("could not report fatal error to extension: %s", send_exc)

    def _reject_pending_calls(self) -> None:
        self.router.cancel_pending("host shutting down")

    def _close_channel(self) -> None:
        self.transport.close("host shutting down")

    async def _drain_router(self) -> None:
        await self.router.drain(_DRAIN_TIMEOUT)

    # ─────────────────────────────────────────────────────────────────────────
    # Run
    # ─────────────────────────────────────────────────────────────────────────

    async def _serve(self) -> None:
        logger.info("starting MCP host in %s mode", self.config.run_mode)
        try:
            await self.router.send_message({"type": "status", "data": self.status_payload()})
        except ConnectionClosedError:
            return
        await self.transport.run()

    async def run(self) -> int:
        return await self.lifecycle.run(self._serve)
