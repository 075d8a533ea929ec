from __future__ import annotations

import asyncio
import socket
from typing import Any

import aiohttp
import pytest


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


class _FakeMessaging:
    def __init__(self, results: dict[str, Any]) -> None:
        self.results = results
        self.calls: list[tuple[dict[str, Any], float | None]] = []

    async def rpc_request(self, request: dict[str, Any], *, timeout: float | None = None) -> Any:
        self.calls.append((request, timeout))
        result = self.results[request["method"]]
        if isinstance(result, Exception):
            raise result
        return result


def _config(port: int, host: str = "127.0.0.1"):
    from mcp_servers.nanobrowser_host.config import HostConfig

    return HostConfig(port=port, bind_host=host)


def test_start_twice_is_noop_and_shutdown_is_idempotent() -> None:
    from mcp_servers.nanobrowser_host.mcp_server import McpServerManager

    async def _run() -> None:
        gw = McpServerManager(_config(0))
        await gw.shutdown()  # before start
        assert await gw.start() is True
        port = gw.port
        assert port
        assert await gw.start() is False
        assert gw.port == port
        await gw.shutdown()
        await gw.shutdown()
        assert gw.is_running() is False

    asyncio.run(_run())


def test_port_in_use_is_recoverable_bind_error() -> None:
    from mcp_servers.nanobrowser_host.errors import ListenerBindError
    from mcp_servers.nanobrowser_host.mcp_server import McpServerManager

    port = _free_port()
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", port))
    blocker.listen(1)

    async def _run() -> None:
        gw = McpServerManager(_config(port))
        with pytest.raises(ListenerBindError) as exc_info:
            await gw.start()
        assert exc_info.value.in_use is True
        assert exc_info.value.port == port
        assert gw.is_running() is False
        await gw.shutdown()

    try:
        asyncio.run(_run())
    finally:
        blocker.close()


def test_unassignable_address_is_fatal_bind_error() -> None:
    from mcp_servers.nanobrowser_host.errors import ListenerBindError
    from mcp_servers.nanobrowser_host.mcp_server import McpServerManager

    async def _run() -> None:
        # TEST-NET-1: never assigned to a local interface.
        gw = McpServerManager(_config(0, host="192.0.2.1"))
        with pytest.raises(ListenerBindError) as exc_info:
            await gw.start()
        assert exc_info.value.in_use is False

    asyncio.run(_run())


def test_mcp_session_lists_and_calls_tools() -> None:
    from mcp_servers.nanobrowser_host.mcp_server import McpServerManager
    from mcp_servers.nanobrowser_host.resources import CurrentStateResource
    from mcp_servers.nanobrowser_host.server.contract import SESSION_HEADER
    from mcp_servers.nanobrowser_host.tools import NavigateToTool, RunTaskTool

    messaging = _FakeMessaging(
        {
            "run_task": {"success": True, "message": "done"},
            "navigate_to": {"message": "Navigation to https://example.com initiated"},
            "get_browser_state": {"activeTab": {"id": 1, "url": "https://example.com"}},
        }
    )

    async def _run() -> dict[str, Any]:
        gw = McpServerManager(_config(0))
        gw.register_resource(CurrentStateResource(messaging))
        gw.register_tool(NavigateToTool(messaging))
        gw.register_tool(RunTaskTool(messaging))
        await gw.start()
        url = f"http://127.0.0.1:{gw.port}/mcp"
        out: dict[str, Any] = {}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url, json={"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2025-03-26"}}
                ) as resp:
                    out["init"] = await resp.json()
                    sid = resp.headers[SESSION_HEADER]
                headers = {SESSION_HEADER: sid}

                async with session.post(
                    url, json={"jsonrpc": "2.0", "method": "notifications/initialized"}, headers=headers
                ) as resp:
                    out["notification_status"] = resp.status

                async with session.post(url, json={"jsonrpc": "2.0", "id": 2, "method": "tools/list"}, headers=headers) as resp:
                    out["tools"] = await resp.json()

                async with session.post(
                    url,
                    json={"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "run_task", "arguments": {"task": "open inbox", "timeout": 1500}}},
                    headers=headers,
                ) as resp:
                    out["run_task"] = await resp.json()

                async with session.post(
                    url,
                    json={"jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {"name": "missing", "arguments": {}}},
                    headers=headers,
                ) as resp:
                    out["missing"] = await resp.json()

                async with session.post(
                    url,
                    json={"jsonrpc": "2.0", "id": 5, "method": "resources/read", "params": {"uri": "browser://current/state"}},
                    headers=headers,
                ) as resp:
                    out["resource"] = await resp.json()

                async with session.post(url, data=b"{not json", headers=headers) as resp:
                    out["parse_status"] = resp.status
                    out["parse"] = await resp.json()

                async with session.get(url) as resp:
                    out["get_status"] = resp.status

                async with session.get(f"http://127.0.0.1:{gw.port}/health") as resp:
                    out["health"] = await resp.json()
        finally:
            await gw.shutdown()
        return out

    out = asyncio.run(_run())

    assert out["init"]["result"]["protocolVersion"] == "2025-03-26"
    assert out["notification_status"] == 202
    assert [t["name"] for t in out["tools"]["result"]["tools"]] == ["navigate_to", "run_task"]

    call = out["run_task"]["result"]
    assert call["isError"] is False
    assert "**Status**: ✅ Success" in call["content"][0]["text"]
    assert messaging.calls[0] == ({"method": "run_task", "params": {"task": "open inbox", "context": ""}}, 1.5)

    assert out["missing"]["error"]["code"] == -32602
    assert out["missing"]["id"] == 4

    contents = out["resource"]["result"]["contents"]
    assert contents[0]["uri"] == "browser://current/state"
    assert contents[0]["mimeType"] == "application/json"
    assert '"activeTab"' in contents[0]["text"]

    assert out["parse_status"] == 400
    assert out["parse"]["error"]["code"] == -32700
    assert out["get_status"] == 405
    assert out["health"]["status"] == "ok"


def test_tool_failure_is_reported_as_tool_error() -> None:
    from mcp_servers.nanobrowser_host.errors import RpcTimeoutError
    from mcp_servers.nanobrowser_host.mcp_server import McpServerManager
    from mcp_servers.nanobrowser_host.tools import RunTaskTool

    messaging = _FakeMessaging({"run_task": RpcTimeoutError("run_task", 1.0)})

    async def _run() -> dict[str, Any]:
        gw = McpServerManager(_config(0))
        gw.register_tool(RunTaskTool(messaging))
        return await gw.dispatch("tools/call", {"name": "run_task", "arguments": {"task": "t"}}, 9)

    response = asyncio.run(_run())
    assert response["id"] == 9
    assert response["result"]["isError"] is True
    assert "**Error Type**: Timeout" in response["result"]["content"][0]["text"]


def test_unexpected_start_failure_releases_runner(monkeypatch) -> None:
    from aiohttp import web

    from mcp_servers.nanobrowser_host.mcp_server import McpServerManager

    cleanups: list[bool] = []
    original_cleanup = web.AppRunner.cleanup

    async def _failing_start(self) -> None:
        raise RuntimeError("listener exploded")

    async def _tracking_cleanup(self) -> None:
        cleanups.append(True)
        await original_cleanup(self)

    async def _run() -> None:
        gw = McpServerManager(_config(0))
        with monkeypatch.context() as patch:
            patch.setattr(web.TCPSite, "start", _failing_start)
            patch.setattr(web.AppRunner, "cleanup", _tracking_cleanup)
            with pytest.raises(RuntimeError, match="listener exploded"):
                await gw.start()
        assert cleanups == [True]
        assert gw.is_running() is False
        assert await gw.start() is True
        await gw.shutdown()

    asyncio.run(_run())
