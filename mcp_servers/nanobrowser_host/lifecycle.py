"""Process lifecycle: INIT -> RUNNING -> SHUTTING_DOWN -> TERMINATED.

Every exit path (explicit command, OS signal, counterpart disconnect, fatal
error) goes through `request_shutdown`. The first caller wins the state
transition; later triggers are no-ops. Termination then runs one cleanup
sequence: run pre-stop hooks, stop the gateway, run cleanup hooks, remove
the PID marker.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import logging
import signal
import threading
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from .errors import DuplicateInstanceError, ListenerBindError
from .pid_marker import ProcessMarker

if TYPE_CHECKING:
    from .mcp_server import McpServerManager

logger = logging.getLogger("mcp.host.lifecycle")

CleanupHook = Callable[[], Awaitable[None] | None]
ServeFactory = Callable[[], Awaitable[None]]


class HostState(enum.Enum):
    INIT = "init"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class ShutdownReason(enum.Enum):
    COMMAND = "command"
    SIGNAL = "signal"
    DISCONNECT = "disconnect"
    FATAL = "fatal"

    @property
    def exit_code(self) -> int:
        return 1 if self is ShutdownReason.FATAL else 0


def _shutdown_signals() -> list[signal.Signals]:
    sigs = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGHUP"):
        sigs.append(signal.SIGHUP)
    return sigs


class ProcessLifecycleManager:
    def __init__(
        self,
        *,
        marker: ProcessMarker,
        gateway: McpServerManager | None = None,
        install_signal_handlers: bool = True,
        cleanup_timeout: float = 5.0,
    ) -> None:
        self.marker = marker
        self.gateway = gateway
        self._install_signals = install_signal_handlers
        self._cleanup_timeout = float(cleanup_timeout)

        self._lock = threading.Lock()
        self._state = HostState.INIT
        self._reason: ShutdownReason | None = None
        self.fatal_error: BaseException | None = None
        self.gateway_error: ListenerBindError | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._pre_stop_hooks: list[tuple[str, CleanupHook]] = []
        self._cleanup_hooks: list[tuple[str, CleanupHook]] = []
        self._installed_signals: list[signal.Signals] = []
        self._prev_signal_handlers: dict[signal.Signals, Any] = {}
        self._prev_thread_hook: Any = None

    # ─────────────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> HostState:
        with self._lock:
            return self._state

    @property
    def reason(self) -> ShutdownReason | None:
        with self._lock:
            return self._reason

    @property
    def exit_code(self) -> int:
        reason = self.reason
        return reason.exit_code if reason is not None else 0

    def add_cleanup(self, name: str, hook: CleanupHook, *, before_gateway_stop: bool = False) -> None:
        """Run `hook` during termination.

        Hooks run in registration order, after the gateway stopped (or just before it
        stops, with `before_gateway_stop=True`) and always before the marker is removed.
        """
        (self._pre_stop_hooks if before_gateway_stop else self._cleanup_hooks).append((name, hook))

    def request_shutdown(self, reason: ShutdownReason, *, detail: str = "", error: BaseException | None = None) -> bool:
        """Begin shutdown. Returns True only for the trigger that won the transition."""
        with self._lock:
            if self._state in (HostState.SHUTTING_DOWN, HostState.TERMINATED):
                logger.debug("shutdown already in progress; ignoring %s trigger", reason.value)
                return False
            self._state = HostState.SHUTTING_DOWN
            self._reason = reason
            if error is not None:
                self.fatal_error = error

        log = logger.error if reason is ShutdownReason.FATAL else logger.info
        log("shutdown requested: reason=%s%s", reason.value, f" ({detail})" if detail else "")
        self._wake()
        return True

    def _wake(self) -> None:
        loop = self._loop
        event = self._shutdown_event
        if loop is None or event is None:
            return
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(event.set)

    # ─────────────────────────────────────────────────────────────────────────
    # Run
    # ─────────────────────────────────────────────────────────────────────────

    async def startup(self) -> None:
        """INIT -> RUNNING: claim the marker, then bind the gateway.

        DuplicateInstanceError and fatal ListenerBindError propagate.
        """
        self.marker.claim()
        with self._lock:
            if self._state is HostState.INIT:
                self._state = HostState.RUNNING

        if self.gateway is None:
            return
        try:
            started = await self.gateway.start()
        except ListenerBindError as exc:
            if not exc.in_use:
                raise
            self.gateway_error = exc
            logger.warning("port %s is already in use; continuing without the MCP HTTP server", exc.port)
            logger.info("native messaging functionality will still work normally")
            return
        if not started:
            logger.warning("MCP HTTP server was already running")

    async def run(self, serve: ServeFactory | None = None) -> int:
        """Run until a shutdown trigger fires; return the process exit status."""
        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        try:
            await self.startup()
        except DuplicateInstanceError as exc:
            logger.error("%s. Exiting.", exc)
            with self._lock:
                self._state = HostState.TERMINATED
                self._reason = ShutdownReason.FATAL
            return ShutdownReason.FATAL.exit_code
        except Exception as exc:
            logger.exception("host startup failed")
            self.request_shutdown(ShutdownReason.FATAL, detail="startup failed", error=exc)

        serve_task: asyncio.Task | None = None
        self._install_hooks()
        try:
            if self.state is HostState.RUNNING and serve is not None:
                serve_task = self._loop.create_task(serve(), name="native-host-serve")
                serve_task.add_done_callback(self._on_serve_done)
            if self.state is HostState.RUNNING:
                await self._shutdown_event.wait()
        except asyncio.CancelledError:
            self.request_shutdown(ShutdownReason.SIGNAL, detail="cancelled")
        except Exception as exc:
            logger.exception("uncaught error in host run loop")
            self.request_shutdown(ShutdownReason.FATAL, detail="uncaught error", error=exc)
        finally:
            await self._terminate(serve_task)
        return self.exit_code

    def _on_serve_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("native channel loop crashed: %r", exc)
            self.request_shutdown(ShutdownReason.FATAL, detail="native channel loop crashed", error=exc)
            return
        self.request_shutdown(ShutdownReason.DISCONNECT, detail="native channel loop ended")

    async def _terminate(self, serve_task: asyncio.Task | None) -> None:
        # Reached from startup failures too, where no trigger was recorded yet.
        self.request_shutdown(ShutdownReason.FATAL if self.fatal_error else ShutdownReason.COMMAND, detail="terminate")
        try:
            # Gateway handlers blocked on native calls must be released before the listener drains.
            await self._run_hooks(self._pre_stop_hooks)
            if self.gateway is not None and self.gateway.is_running():
                logger.info("shutting down MCP server")
                await self.gateway.shutdown()
            await self._run_hooks(self._cleanup_hooks)

            if serve_task is not None and not serve_task.done():
                serve_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await serve_task
        finally:
            self.marker.release()
            self._remove_hooks()
            with self._lock:
                self._state = HostState.TERMINATED
            logger.info("host terminated: reason=%s exit_code=%d", self.reason.value if self.reason else "-", self.exit_code)

    async def _run_hooks(self, hooks: list[tuple[str, CleanupHook]]) -> None:
        for name, hook in hooks:
            try:
                res = hook()
                if inspect.isawaitable(res):
                    await asyncio.wait_for(res, timeout=self._cleanup_timeout)
            except Exception:
                logger.exception("cleanup step %s failed", name)

    # ─────────────────────────────────────────────────────────────────────────
    # Signal and fatal-error observers
    # ─────────────────────────────────────────────────────────────────────────

    def _on_signal(self, signum: int) -> None:
        name = signal.Signals(signum).name
        logger.info("received %s signal, shutting down", name)
        self.request_shutdown(ShutdownReason.SIGNAL, detail=name)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        loop.default_exception_handler(context)
        exc = context.get("exception")
        if exc is None or isinstance(exc, (asyncio.CancelledError, ConnectionResetError, BrokenPipeError)):
            return
        self.request_shutdown(ShutdownReason.FATAL, detail=str(context.get("message") or "unhandled error"), error=exc)

    def _on_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        logger.error("uncaught exception in thread %s: %r", getattr(args.thread, "name", "?"), args.exc_value)
        self.request_shutdown(ShutdownReason.FATAL, detail="thread crashed", error=args.exc_value)

    def _install_hooks(self) -> None:
        loop = self._loop
        if loop is None:
            return
        loop.set_exception_handler(self._on_loop_exception)
        self._prev_thread_hook = threading.excepthook
        threading.excepthook = self._on_thread_exception

        if not self._install_signals:
            return
        for sig in _shutdown_signals():
            try:
                loop.add_signal_handler(sig, self._on_signal, int(sig))
                self._installed_signals.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows event loops: fall back to a plain signal handler.
                try:
                    self._prev_signal_handlers[sig] = signal.signal(
                        sig, lambda signum, _frame: loop.call_soon_threadsafe(self._on_signal, signum)
                    )
                except (OSError, RuntimeError, ValueError):
                    continue

    def _remove_hooks(self) -> None:
        loop = self._loop
        if loop is not None:
            for sig in self._installed_signals:
                with contextlib.suppress(Exception):
                    loop.remove_signal_handler(sig)
            with contextlib.suppress(Exception):
                loop.set_exception_handler(None)
        self._installed_signals.clear()
        for sig, prev in self._prev_signal_handlers.items():
            with contextlib.suppress(Exception):
                signal.signal(sig, prev)
        self._prev_signal_handlers.clear()
        if self._prev_thread_hook is not None:
            threading.excepthook = self._prev_thread_hook
            self._prev_thread_hook = None
