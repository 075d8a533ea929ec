"""Chrome Native Messaging host for the Nanobrowser extension.

This process is launched by Chrome when the extension calls `connectNative()`.

It bridges two worlds:
- Extension <-> host: Chrome Native Messaging (stdin/stdout framing)
- MCP clients <-> host: MCP JSON-RPC over HTTP (POST /mcp on localhost)
"""

from __future__ import annotations

import asyncio

from .config import HostConfig
from .host import NativeHost
from .logging_setup import configure_logging
from .native_messaging import open_stdio_transport


async def _run(config: HostConfig) -> int:
    transport = await open_stdio_transport()
    return await NativeHost(config, transport).run()


def main() -> None:
    # Native messaging requires strict stdout framing. Never write logs to stdout.
    config = HostConfig.from_env()
    configure_logging(config)
    try:
        raise SystemExit(asyncio.run(_run(config)))
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()
