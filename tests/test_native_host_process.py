from __future__ import annotations

import contextlib
import json
import os
import select
import signal
import socket
import struct
import subprocess
import sys
import threading
import time
import urllib.request
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _read_exact(fp, n: int, *, timeout_s: float) -> bytes:
    buf = bytearray()
    fd = fp.fileno()
    deadline = time.time() + max(0.01, float(timeout_s))
    while len(buf) < n:
        remaining = deadline - time.time()
        if remaining <= 0:
            raise TimeoutError(f"timeout while reading {n} bytes")
        r, _w, _x = select.select([fd], [], [], remaining)
        if not r:
            continue
        chunk = os.read(fd, n - len(buf))
        if not chunk:
            raise EOFError("unexpected EOF")
        buf.extend(chunk)
    return bytes(buf)


def _read_native_message(fp, *, timeout_s: float) -> dict[str, Any]:
    header = _read_exact(fp, 4, timeout_s=timeout_s)
    (length,) = struct.unpack("<I", header)
    raw = _read_exact(fp, int(length), timeout_s=timeout_s)
    data = json.loads(raw.decode("utf-8"))
    assert isinstance(data, dict)
    return data


def _write_native_message(fp, msg: dict[str, Any]) -> None:
    raw = json.dumps(msg, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    fp.write(struct.pack("<I", len(raw)))
    fp.write(raw)
    fp.flush()


def _spawn_host(home: Path, port: int) -> subprocess.Popen:
    env = os.environ.copy()
    env["NANOBROWSER_HOME"] = str(home)
    env["PORT"] = str(port)
    env["LOG_LEVEL"] = "INFO"
    env["PYTHONPATH"] = os.pathsep.join([str(ROOT), env.get("PYTHONPATH", "")])
    return subprocess.Popen(
        [sys.executable, "-m", "mcp_servers.nanobrowser_host.native_host"],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
        cwd=str(ROOT),
    )


def _stop(proc: subprocess.Popen) -> None:
    with contextlib.suppress(Exception):
        proc.kill()
    with contextlib.suppress(Exception):
        proc.wait(timeout=5.0)


def test_host_serves_native_and_http_then_exits_on_stdin_close(tmp_path) -> None:
    port = _free_port()
    proc = _spawn_host(tmp_path, port)
    assert proc.stdin is not None
    assert proc.stdout is not None
    marker = tmp_path / "mcp-host.pid"

    try:
        status = _read_native_message(proc.stdout, timeout_s=10.0)
        assert status["type"] == "status"
        assert status["data"]["isConnected"] is True
        assert status["data"]["runMode"] == "stdio"
        assert marker.read_text(encoding="utf-8").strip() == str(proc.pid)

        _write_native_message(proc.stdin, {"id": 41, "method": "ping"})
        _write_native_message(proc.stdin, {"id": 42, "method": "no_such_method"})
        replies = {}
        for _ in range(2):
            msg = _read_native_message(proc.stdout, timeout_s=5.0)
            replies[msg["id"]] = msg
        assert isinstance(replies[41]["result"]["timestamp"], int)
        assert replies[42]["error"]["code"] == -32601

        with urllib.request.urlopen(f"http://127.0.0.1:{port}/health", timeout=5.0) as resp:
            health = json.loads(resp.read().decode("utf-8"))
        assert health["status"] == "ok"
        assert health["tools"] == ["run_task"]

        proc.stdin.close()
        assert proc.wait(timeout=10.0) == 0
        assert not marker.exists()
        # The listener is gone: the port can be bound again.
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind(("127.0.0.1", port))
    finally:
        _stop(proc)


def test_second_instance_exits_nonzero_and_keeps_marker(tmp_path) -> None:
    first = _spawn_host(tmp_path, _free_port())
    second: subprocess.Popen | None = None
    marker = tmp_path / "mcp-host.pid"
    try:
        assert first.stdout is not None
        _read_native_message(first.stdout, timeout_s=10.0)

        second = _spawn_host(tmp_path, _free_port())
        assert second.wait(timeout=10.0) == 1
        assert marker.read_text(encoding="utf-8").strip() == str(first.pid)
    finally:
        if second is not None:
            _stop(second)
        _stop(first)


def test_sigterm_exits_cleanly(tmp_path) -> None:
    proc = _spawn_host(tmp_path, _free_port())
    marker = tmp_path / "mcp-host.pid"
    try:
        assert proc.stdout is not None
        _read_native_message(proc.stdout, timeout_s=10.0)
        proc.send_signal(signal.SIGTERM)
        assert proc.wait(timeout=10.0) == 0
        assert not marker.exists()
    finally:
        _stop(proc)


def test_shutdown_message_exits_cleanly(tmp_path) -> None:
    proc = _spawn_host(tmp_path, _free_port())
    marker = tmp_path / "mcp-host.pid"
    try:
        assert proc.stdin is not None
        assert proc.stdout is not None
        _read_native_message(proc.stdout, timeout_s=10.0)
        _write_native_message(proc.stdin, {"type": "shutdown"})
        assert proc.wait(timeout=10.0) == 0
        assert not marker.exists()
    finally:
        _stop(proc)


def _start_tool_call(port: int) -> tuple[threading.Thread, dict[str, Any]]:
    outcome: dict[str, Any] = {}
    body = json.dumps(
        {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "run_task", "arguments": {"task": "wait"}}}
    ).encode("utf-8")

    def _call() -> None:
        req = urllib.request.Request(
            f"http://127.0.0.1:{port}/mcp",
            data=body,
            headers={"Content-Type": "application/json", "Accept": "application/json, text/event-stream"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=30.0) as resp:
                outcome["response"] = json.loads(resp.read().decode("utf-8"))
        except Exception as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=_call, daemon=True)
    thread.start()
    return thread, outcome


def _exit_with_tool_call_in_flight(tmp_path, trigger) -> None:
    port = _free_port()
    proc = _spawn_host(tmp_path, port)
    marker = tmp_path / "mcp-host.pid"
    try:
        assert proc.stdin is not None
        assert proc.stdout is not None
        _read_native_message(proc.stdout, timeout_s=10.0)

        thread, outcome = _start_tool_call(port)
        forwarded = _read_native_message(proc.stdout, timeout_s=10.0)
        assert forwarded["method"] == "run_task"
        assert forwarded["params"]["task"] == "wait"

        # The extension never answers; the host must not wait out the call deadline.
        started = time.monotonic()
        trigger(proc)
        assert proc.wait(timeout=10.0) == 0
        assert time.monotonic() - started < 8.0
        assert not marker.exists()

        thread.join(timeout=5.0)
        if "response" in outcome:
            assert outcome["response"]["result"]["isError"] is True
    finally:
        _stop(proc)


def test_sigterm_with_tool_call_in_flight_exits_promptly(tmp_path) -> None:
    _exit_with_tool_call_in_flight(tmp_path, lambda proc: proc.send_signal(signal.SIGTERM))


def test_shutdown_message_with_tool_call_in_flight_exits_promptly(tmp_path) -> None:
    _exit_with_tool_call_in_flight(tmp_path, lambda proc: _write_native_message(proc.stdin, {"type": "shutdown"}))
