"""Chrome Native Messaging framing (stdin/stdout transport).

One frame is a 4-byte little-endian unsigned length followed by that many bytes
of UTF-8 JSON. The decoder is incremental: bytes can arrive split at any
boundary, and one read can carry several frames.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import struct
import sys
import threading
from collections.abc import Callable
from typing import Any

from .errors import ConnectionClosedError, ProtocolFramingError

logger = logging.getLogger("mcp.host.native_messaging")

MAX_FRAME_BYTES = 8_000_000
_HEADER = struct.Struct("<I")
_READ_CHUNK = 64 * 1024

MessageCallback = Callable[[dict[str, Any]], None]
ClosedCallback = Callable[[str], None]


def encode_frame(message: dict[str, Any]) -> bytes:
    """Serialize one message into a single length-prefixed frame."""
    raw = json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    if len(raw) > MAX_FRAME_BYTES:
        raise ValueError(f"native message too large: {len(raw)} bytes")
    return _HEADER.pack(len(raw)) + raw


def decode_payload(raw: bytes) -> dict[str, Any]:
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolFramingError(f"invalid JSON payload: {exc}") from exc
    if not isinstance(obj, dict):
        raise ProtocolFramingError(f"native message must be a JSON object, got {type(obj).__name__}")
    return obj


class FrameDecoder:
    """Reassembles frames from arbitrarily chunked bytes."""

    def __init__(self, *, max_frame_bytes: int = MAX_FRAME_BYTES) -> None:
        self._buf = bytearray()
        self._max_frame_bytes = int(max_frame_bytes)

    @property
    def buffered(self) -> int:
        return len(self._buf)

    def push(self, chunk: bytes) -> None:
        self._buf.extend(chunk)

    def next_message(self) -> dict[str, Any] | None:
        """Pop the next complete message, or None if more bytes are needed."""
        if len(self._buf) < _HEADER.size:
            return None
        (length,) = _HEADER.unpack_from(self._buf, 0)
        if length <= 0 or length > self._max_frame_bytes:
            raise ProtocolFramingError(f"invalid native frame length: {length}")
        end = _HEADER.size + length
        if len(self._buf) < end:
            return None
        raw = bytes(self._buf[_HEADER.size : end])
        del self._buf[:end]
        return decode_payload(raw)

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Append `chunk` and return every message it completed, in order."""
        self.push(chunk)
        out: list[dict[str, Any]] = []
        while (msg := self.next_message()) is not None:
            out.append(msg)
        return out


class NativeTransport:
    """Framed message transport over an asyncio reader/writer pair.

    The connection-closed callbacks fire exactly once, whichever condition ends
    the stream first (EOF, read error, framing error, explicit close).
    """

    def __init__(self, reader: asyncio.StreamReader, writer: Any, *, max_frame_bytes: int = MAX_FRAME_BYTES) -> None:
        self._reader = reader
        self._writer = writer
        self._decoder = FrameDecoder(max_frame_bytes=max_frame_bytes)
        self._on_message: MessageCallback | None = None
        self._closed_callbacks: list[ClosedCallback] = []
        self._closed = False
        self.close_reason: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def set_message_handler(self, callback: MessageCallback) -> None:
        self._on_message = callback

    def on_connection_closed(self, callback: ClosedCallback) -> None:
        self._closed_callbacks.append(callback)

    async def run(self) -> None:
        """Read until the stream ends; deliver messages in arrival order."""
        try:
            while not self._closed:
                try:
                    chunk = await self._reader.read(_READ_CHUNK)
                except (ConnectionError, OSError) as exc:
                    self._signal_closed(f"read error: {exc}")
                    return
                if not chunk:
                    if self._decoder.buffered:
                        logger.warning("native channel ended inside a frame (%d bytes dropped)", self._decoder.buffered)
                    self._signal_closed("eof")
                    return
                self._decoder.push(chunk)
                while not self._closed and (msg := self._decoder.next_message()) is not None:
                    self._deliver(msg)
        except ProtocolFramingError as exc:
            logger.error("native protocol error: %s", exc)
            self._signal_closed(f"protocol error: {exc}")
        except asyncio.CancelledError:
            self._signal_closed("cancelled")
            raise

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosedError(f"Native channel is closed ({self.close_reason})")
        frame = encode_frame(message)
        try:
            # Single write keeps the frame contiguous on the pipe.
            self._writer.write(frame)
            drain = getattr(self._writer, "drain", None)
            if drain is not None:
                await drain()
        except (ConnectionError, OSError) as exc:
            self._signal_closed(f"write error: {exc}")
            raise ConnectionClosedError(f"Native channel write failed: {exc}") from exc

    def close(self, reason: str = "closed") -> None:
        self._signal_closed(reason)
        close = getattr(self._writer, "close", None)
        if close is not None:
            with contextlib.suppress(Exception):
                close()

    def _deliver(self, msg: dict[str, Any]) -> None:
        cb = self._on_message
        if cb is None:
            logger.debug("no message handler; dropping native message")
            return
        try:
            cb(msg)
        except Exception:
            logger.exception("native message handler failed")

    def _signal_closed(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_reason = reason
        logger.info("native channel closed: %s", reason)
        for cb in list(self._closed_callbacks):
            try:
                cb(reason)
            except Exception:
                logger.exception("connection-closed callback failed")


class _BlockingWriter:
    """Fallback writer for stdout handles that are not pipes."""

    def __init__(self, stream: Any) -> None:
        self._stream = stream

    def write(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self._stream.flush()


def _feed_from_thread(loop: asyncio.AbstractEventLoop, reader: asyncio.StreamReader, stream: Any) -> None:
    fd = stream.fileno()

    def _call(fn: Callable[..., Any], *args: Any) -> None:
        # The loop may already be closed when the host exits first.
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(fn, *args)

    def _pump() -> None:
        try:
            while True:
                chunk = os.read(fd, _READ_CHUNK)
                if not chunk:
                    break
                _call(reader.feed_data, chunk)
        except OSError as exc:
            _call(reader.set_exception, exc)
            return
        _call(reader.feed_eof)

    threading.Thread(target=_pump, name="native-stdin-reader", daemon=True).start()


async def open_stdio_transport(*, stdin: Any = None, stdout: Any = None) -> NativeTransport:
    """Bind a NativeTransport to this process's stdin/stdout."""
    loop = asyncio.get_running_loop()
    stdin = stdin if stdin is not None else sys.stdin.buffer
    stdout = stdout if stdout is not None else sys.stdout.buffer

    reader = asyncio.StreamReader(limit=MAX_FRAME_BYTES + _HEADER.size)
    try:
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), stdin)
    except (ValueError, OSError, NotImplementedError):
        # Regular files and consoles are not pipes.
        _feed_from_thread(loop, reader, stdin)

    writer: Any
    try:
        w_transport, w_protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, stdout)
        writer = asyncio.StreamWriter(w_transport, w_protocol, None, loop)
    except (ValueError, OSError, NotImplementedError):
        writer = _BlockingWriter(stdout)
    return NativeTransport(reader, writer)
