from __future__ import annotations

import os
import subprocess
import sys

import pytest


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait(timeout=10)
    return proc.pid


def test_claim_writes_pid_and_release_removes_it(tmp_path) -> None:
    from mcp_servers.nanobrowser_host.pid_marker import ProcessMarker

    path = tmp_path / "home" / "mcp-host.pid"
    marker = ProcessMarker(path)
    marker.claim()

    assert marker.owned is True
    assert path.read_text(encoding="utf-8") == str(os.getpid())
    assert not [p for p in path.parent.iterdir() if p.name != path.name]

    marker.release()
    marker.release()
    assert not path.exists()
    assert marker.owned is False


def test_stale_marker_is_replaced(tmp_path) -> None:
    from mcp_servers.nanobrowser_host.pid_marker import ProcessMarker

    path = tmp_path / "mcp-host.pid"
    path.write_text(str(_dead_pid()), encoding="utf-8")

    marker = ProcessMarker(path)
    marker.claim()
    try:
        assert marker.read_pid() == os.getpid()
    finally:
        marker.release()


def test_unparseable_marker_is_replaced(tmp_path) -> None:
    from mcp_servers.nanobrowser_host.pid_marker import ProcessMarker

    path = tmp_path / "mcp-host.pid"
    path.write_text("not-a-pid\n", encoding="utf-8")

    marker = ProcessMarker(path)
    marker.claim()
    try:
        assert marker.read_pid() == os.getpid()
    finally:
        marker.release()


def test_live_marker_raises_duplicate_and_is_left_untouched(tmp_path) -> None:
    from mcp_servers.nanobrowser_host.errors import DuplicateInstanceError
    from mcp_servers.nanobrowser_host.pid_marker import ProcessMarker

    path = tmp_path / "mcp-host.pid"
    # The test process itself is the "other" live instance.
    path.write_text(str(os.getpid()), encoding="utf-8")

    marker = ProcessMarker(path, pid=os.getpid() + 100_000)
    with pytest.raises(DuplicateInstanceError) as exc_info:
        marker.claim()

    assert exc_info.value.pid == os.getpid()
    assert marker.owned is False
    marker.release()
    assert path.read_text(encoding="utf-8") == str(os.getpid())


def test_release_leaves_marker_naming_another_process(tmp_path) -> None:
    from mcp_servers.nanobrowser_host.pid_marker import ProcessMarker

    path = tmp_path / "mcp-host.pid"
    marker = ProcessMarker(path)
    marker.claim()
    path.write_text("12345", encoding="utf-8")

    marker.release()
    assert path.read_text(encoding="utf-8") == "12345"


def test_is_process_alive() -> None:
    from mcp_servers.nanobrowser_host.pid_marker import is_process_alive

    assert is_process_alive(os.getpid()) is True
    assert is_process_alive(_dead_pid()) is False
    assert is_process_alive(0) is False
