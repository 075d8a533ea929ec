"""Logging configuration.

Native messaging requires strict stdout framing: log records go to stderr (and
optionally a file), never to stdout.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from .config import HostConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(config: HostConfig) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_file:
        path = Path(config.log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(path, encoding="utf-8"))
        except OSError as exc:
            sys.stderr.write(f"[mcp.host] cannot open log file {path}: {exc}\n")

    level = logging.getLevelName(config.log_level)
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
