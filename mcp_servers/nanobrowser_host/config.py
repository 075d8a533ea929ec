from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

HOST_NAME = "nanobrowser-mcp-host"
HOST_VERSION = "0.1.0"

DEFAULT_PORT = 9666
DEFAULT_BIND_HOST = "127.0.0.1"
DEFAULT_RUN_MODE = "stdio"
DEFAULT_RPC_TIMEOUT = 30.0
MARKER_FILENAME = "mcp-host.pid"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(raw: str | None) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class HostConfig:
    port: int = DEFAULT_PORT
    bind_host: str = DEFAULT_BIND_HOST
    extended_capabilities: bool = False
    run_mode: str = DEFAULT_RUN_MODE
    home_dir: str = expand_path("~/.nanobrowser")
    log_level: str = "INFO"
    log_file: str | None = None
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT

    @property
    def marker_path(self) -> Path:
        return Path(self.home_dir) / MARKER_FILENAME

    @staticmethod
    def parse_port(raw: str | None) -> int:
        try:
            port = int((raw or "").strip())
        except ValueError:
            return DEFAULT_PORT
        # 0 is accepted: the OS picks a free port (used by tests).
        if 0 <= port <= 65535:
            return port
        return DEFAULT_PORT

    @classmethod
    def from_env(cls) -> HostConfig:
        try:
            rpc_timeout = float(os.environ.get("MCP_HOST_RPC_TIMEOUT") or DEFAULT_RPC_TIMEOUT)
        except ValueError:
            rpc_timeout = DEFAULT_RPC_TIMEOUT
        log_file = (os.environ.get("MCP_HOST_LOG_FILE") or "").strip()
        return cls(
            port=cls.parse_port(os.environ.get("PORT")),
            bind_host=(os.environ.get("MCP_HOST_BIND") or DEFAULT_BIND_HOST).strip() or DEFAULT_BIND_HOST,
            extended_capabilities=_env_flag(os.environ.get("LOW_LEVEL_TOOLS_ENABLED")),
            run_mode=(os.environ.get("RUN_MODE") or DEFAULT_RUN_MODE).strip() or DEFAULT_RUN_MODE,
            home_dir=expand_path(os.environ.get("NANOBROWSER_HOME") or "~/.nanobrowser"),
            log_level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
            log_file=expand_path(log_file) if log_file else None,
            rpc_timeout=max(0.1, rpc_timeout),
        )
