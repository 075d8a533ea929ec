from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from ..server.types import ResourceContent

if TYPE_CHECKING:
    from ..messaging import MessageRouter

logger = logging.getLogger("mcp.host.resources.current_state")


class CurrentStateResource:
    """Browser state snapshot (active tab + open tabs), read from the extension."""

    uri = "browser://current/state"
    name = "Current browser state"
    description = "Active tab and open tabs as reported by the browser extension"
    mime_type = "application/json"
    timeout = 10.0

    def __init__(self, messaging: MessageRouter) -> None:
        self.messaging = messaging

    async def read(self, uri: str) -> list[ResourceContent]:
        state = await self.messaging.rpc_request({"method": "get_browser_state", "params": {}}, timeout=self.timeout)
        logger.debug("browser state read (%s)", type(state).__name__)
        return [ResourceContent(uri=uri, text=json.dumps(state, ensure_ascii=False), mime_type=self.mime_type)]
