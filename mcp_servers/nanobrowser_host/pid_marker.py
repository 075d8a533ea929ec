"""PID marker file: "an MCP host instance is running".

The marker is the one resource other actors touch (shell tooling, a second host
instance), so every step is atomic:
- claim: content is written to a private temp file, then hard-linked into place
  (fails if a marker already exists, and readers never see a half-written file);
- stale removal: the marker is renamed aside before it is deleted, and put back
  if it turned out to be a fresh marker from a racing instance;
- release: only a marker that still names this process is removed.
"""

from __future__ import annotations

import atexit
import contextlib
import errno
import logging
import os
from pathlib import Path

import psutil

from .errors import DuplicateInstanceError, HostError

logger = logging.getLogger("mcp.host.pid_marker")

_CLAIM_ATTEMPTS = 5


def is_process_alive(pid: int) -> bool:
    """Non-destructive liveness probe (no signal is sent)."""
    if pid <= 0:
        return False
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class ProcessMarker:
    def __init__(self, path: Path | str, *, pid: int | None = None) -> None:
        self.path = Path(path)
        self.pid = int(pid if pid is not None else os.getpid())
        self._owned = False

    @property
    def owned(self) -> bool:
        return self._owned

    def _read_raw(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("cannot read PID file %s: %s", self.path, exc)
            return ""

    def read_pid(self) -> int | None:
        raw = self._read_raw()
        if raw is None:
            return None
        text = raw.strip()
        return int(text) if text.isdigit() else None

    def claim(self) -> None:
        """Write this process's marker; raise DuplicateInstanceError if a live instance owns it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(_CLAIM_ATTEMPTS):
            raw = self._read_raw()
            if raw is not None:
                text = raw.strip()
                holder = int(text) if text.isdigit() else None
                if holder is not None and holder != self.pid and is_process_alive(holder):
                    raise DuplicateInstanceError(holder, self.path)
                if holder is None:
                    logger.warning("invalid PID in PID file %s, removing stale file", self.path)
                else:
                    logger.info("removing stale PID file for non-existent process %s", holder)
                self._remove_stale(raw)
                continue
            if self._create_exclusive():
                self._owned = True
                atexit.register(self.release)
                logger.info("created PID file %s with PID %s", self.path, self.pid)
                return
        raise HostError(f"Could not claim PID file {self.path} (contended)")

    def release(self) -> None:
        """Remove the marker if it still names this process. Idempotent."""
        if not self._owned:
            return
        self._owned = False
        with contextlib.suppress(Exception):
            atexit.unregister(self.release)
        if self.read_pid() != self.pid:
            logger.warning("PID file %s no longer names this process; leaving it", self.path)
            return
        try:
            self.path.unlink()
            logger.info("removed PID file %s", self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("failed to remove PID file %s: %s", self.path, exc)

    def _create_exclusive(self) -> bool:
        tmp = self.path.with_name(f".{self.path.name}.{self.pid}.tmp")
        tmp.write_text(str(self.pid), encoding="utf-8")
        try:
            os.link(tmp, self.path)
            return True
        except FileExistsError:
            return False
        except OSError as exc:
            if exc.errno not in (errno.EPERM, errno.ENOTSUP, errno.EXDEV):
                raise
            # Filesystem without hard links.
            return self._create_exclusive_fallback()
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()

    def _create_exclusive_fallback(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write(str(self.pid))
        return True

    def _remove_stale(self, expected: str) -> None:
        aside = self.path.with_name(f".{self.path.name}.{self.pid}.stale")
        try:
            os.replace(self.path, aside)
        except FileNotFoundError:
            return
        try:
            if aside.read_text(encoding="utf-8") == expected:
                return
            # A racing instance replaced the stale marker in between; put its marker back.
            with contextlib.suppress(FileExistsError):
                os.link(aside, self.path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                aside.unlink()
