"""Message routing over the native channel.

- Outbound calls (`rpc_request`) are correlated with responses by a monotonic id.
- Inbound calls are dispatched to registered RPC methods and always answered.
- Inbound notifications (`type`) are dispatched to registered handlers.

Dispatch happens in frame arrival order; handler bodies run as tasks so they may
suspend (e.g. on an outbound call) without stalling the read loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    ConnectionClosedError,
    HostError,
    RpcError,
    RpcTimeoutError,
    UnknownMethodError,
)
from .native_messaging import NativeTransport

logger = logging.getLogger("mcp.host.messaging")

DEFAULT_RPC_TIMEOUT = 30.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None] | None]
RpcHandler = Callable[[Any], Any]


@dataclass(slots=True)
class _PendingCall:
    id: int
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None


class MessageRouter:
    def __init__(self, transport: NativeTransport, *, default_timeout: float = DEFAULT_RPC_TIMEOUT) -> None:
        self._transport = transport
        self._default_timeout = float(default_timeout)

        self._handlers: dict[str, MessageHandler] = {}
        self._rpc_methods: dict[str, RpcHandler] = {}

        self._ids = itertools.count(1)
        self._pending: dict[int, _PendingCall] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

        transport.set_message_handler(self.dispatch)
        transport.on_connection_closed(self._on_transport_closed)

    # ─────────────────────────────────────────────────────────────────────────
    # Registration
    # ─────────────────────────────────────────────────────────────────────────

    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        """Register a notification listener. Last registration wins."""
        self._handlers[message_type] = handler

    def register_rpc_method(self, method: str, handler: RpcHandler) -> None:
        """Register a local call handler: `handler(params)` returns a result or raises."""
        self._rpc_methods[method] = handler

    def has_rpc_method(self, method: str) -> bool:
        return method in self._rpc_methods

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    async def send_message(self, message: dict[str, Any]) -> None:
        """Fire-and-forget notification to the counterpart."""
        await self._transport.send(message)

    async def rpc_request(self, request: dict[str, Any], *, timeout: float | None = None) -> Any:
        """Call a method on the counterpart and wait for its result.

        Raises RpcError (error response), RpcTimeoutError (deadline expired first)
        or ConnectionClosedError (channel gone).
        """
        method = str(request.get("method") or "").strip()
        if not method:
            raise ValueError("RPC request method is required")
        if self._closed:
            raise ConnectionClosedError(f"Native channel is closed; cannot call {method}")

        timeout_s = self._default_timeout if timeout is None else max(0.0, float(timeout))
        loop = asyncio.get_running_loop()
        req_id = next(self._ids)
        call = _PendingCall(id=req_id, method=method, future=loop.create_future())
        call.timer = loop.call_later(timeout_s, self._expire, req_id, timeout_s)
        self._pending[req_id] = call

        message: dict[str, Any] = {"id": req_id, "method": method}
        params = request.get("params")
        if params is not None:
            message["params"] = params

        try:
            await self._transport.send(message)
            return await call.future
        finally:
            self._discard(req_id)

    def _discard(self, req_id: int) -> None:
        call = self._pending.pop(req_id, None)
        if call is not None and call.timer is not None:
            call.timer.cancel()

    def _expire(self, req_id: int, timeout: float) -> None:
        call = self._pending.pop(req_id, None)
        if call is None or call.future.done():
            return
        logger.warning("rpc timeout id=%s method=%s after %.3gs", req_id, call.method, timeout)
        call.future.set_exception(RpcTimeoutError(call.method, timeout))

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────────

    def dispatch(self, msg: dict[str, Any]) -> None:
        if "method" in msg:
            self._handle_call(msg)
            return
        req_id = msg.get("id")
        if req_id is not None and ("result" in msg or "error" in msg or "type" not in msg):
            self._handle_response(msg)
            return
        mtype = msg.get("type")
        if isinstance(mtype, str) and mtype:
            self._handle_notification(mtype, msg)
            return
        logger.warning("dropping unrecognized native message keys=%s", sorted(msg.keys()))

    def _handle_response(self, msg: dict[str, Any]) -> None:
        raw_id = msg.get("id")
        req_id = _normalize_id(raw_id)
        call = self._pending.pop(req_id, None) if req_id is not None else None
        if call is None:
            # Late (already timed out) or unknown id: never resurrect a settled call.
            logger.debug("dropping response for unknown or settled id=%r", raw_id)
            return
        if call.timer is not None:
            call.timer.cancel()
        if call.future.done():
            return

        has_result = "result" in msg
        has_error = "error" in msg
        if has_result and has_error:
            call.future.set_exception(
                RpcError(f"Malformed response to {call.method}: both result and error", code=INVALID_REQUEST)
            )
        elif has_error:
            call.future.set_exception(RpcError.from_envelope(msg.get("error")))
        elif has_result:
            call.future.set_result(msg.get("result"))
        else:
            call.future.set_exception(
                RpcError(f"Malformed response to {call.method}: missing result and error", code=INVALID_REQUEST)
            )

    def _handle_call(self, msg: dict[str, Any]) -> None:
        method = msg.get("method")
        handler = self._rpc_methods.get(method) if isinstance(method, str) else None
        self._spawn(self._run_call(msg.get("id"), str(method), handler, msg.get("params")), name=f"rpc:{method}")

    async def _run_call(self, req_id: Any, method: str, handler: RpcHandler | None, params: Any) -> None:
        response: dict[str, Any]
        try:
            if handler is None:
                raise UnknownMethodError(method)
            result = handler(params)
            if inspect.isawaitable(result):
                result = await result
            response = {"id": req_id, "result": result}
        except UnknownMethodError as exc:
            logger.warning("inbound call to unknown method: %s", method)
            response = {"id": req_id, "error": exc.to_error()}
        except HostError as exc:
            logger.info("rpc method %s failed: %s", method, exc)
            response = {"id": req_id, "error": exc.to_error()}
        except Exception as exc:
            logger.exception("rpc method %s raised", method)
            response = {"id": req_id, "error": {"code": INTERNAL_ERROR, "message": str(exc) or type(exc).__name__}}

        if req_id is None:
            return
        await self._reply(response)

    async def _reply(self, response: dict[str, Any]) -> None:
        try:
            await self._transport.send(response)
        except (TypeError, ValueError) as exc:
            logger.error("rpc response for id=%r is not serializable: %s", response.get("id"), exc)
            with contextlib.suppress(ConnectionClosedError):
                await self._transport.send(
                    {"id": response.get("id"), "error": {"code": INTERNAL_ERROR, "message": f"Unserializable result: {exc}"}}
                )
        except ConnectionClosedError:
            logger.debug("native channel closed before response id=%r was sent", response.get("id"))

    def _handle_notification(self, mtype: str, msg: dict[str, Any]) -> None:
        handler = self._handlers.get(mtype)
        if handler is None:
            logger.info("no handler registered for message type: %s", mtype)
            return
        self._spawn(self._run_notification(mtype, handler, msg), name=f"msg:{mtype}")

    async def _run_notification(self, mtype: str, handler: MessageHandler, msg: dict[str, Any]) -> None:
        try:
            res = handler(msg)
            if inspect.isawaitable(res):
                await res
        except Exception:
            logger.exception("handler for message type %s failed", mtype)

    def _spawn(self, coro: Awaitable[None], *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ─────────────────────────────────────────────────────────────────────────
    # Shutdown
    # ─────────────────────────────────────────────────────────────────────────

    def cancel_pending(self, reason: str) -> int:
        """Reject every outstanding call and refuse new ones. Returns how many were rejected."""
        count = len(self._pending)
        self._on_transport_closed(reason)
        if count:
            logger.info("rejected %d outstanding native call(s): %s", count, reason)
        return count

    def _on_transport_closed(self, reason: str) -> None:
        self._closed = True
        pending = list(self._pending.values())
        self._pending.clear()
        for call in pending:
            if call.timer is not None:
                call.timer.cancel()
            if not call.future.done():
                call.future.set_exception(ConnectionClosedError(f"Native channel closed ({reason})"))

    async def drain(self, timeout: float = 2.0) -> None:
        """Wait for in-flight handler tasks, cancelling whatever outlives `timeout`."""
        tasks = [t for t in self._tasks if not t.done()]
        if not tasks:
            return
        _done, still_running = await asyncio.wait(tasks, timeout=max(0.0, float(timeout)))
        for task in still_running:
            task.cancel()
        if still_running:
            logger.info("cancelled %d in-flight native handler(s) at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)


def _normalize_id(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return None
