"""HTTP transports used by every catalog API call.

The base transport is a plain ``httpx.HTTPTransport``. When API logging is enabled the
base transport is wrapped in :class:`LoggingTransport`, which appends one JSON line per
request/response pair to ``api.log`` without touching what the caller sees.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, Optional

import httpx

if TYPE_CHECKING:
    from civitai_downloader.services.runtime_config import EffectiveConfig

logger = logging.getLogger(__name__)

API_LOG_NAME = "api.log"
BODY_LOG_LIMIT = 64 * 1024
REDACTED_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie", "set-cookie"})
LOGGED_CONTENT_ENCODINGS = frozenset({"gzip", "deflate", "identity"})
TEXT_CONTENT_TYPES = ("text/", "application/json", "application/xml", "application/javascript")


def create_base_transport() -> httpx.BaseTransport:
    return httpx.HTTPTransport()


class _RecordingStream(httpx.SyncByteStream):
    """Pass response chunks through untouched while keeping a bounded copy for the log."""

    def __init__(self, stream: httpx.SyncByteStream, capture: bool, on_close: Callable[[bytes, int], None]) -> None:
        self._stream = stream
        self._capture = capture
        self._on_close = on_close
        self._buffer = bytearray()
        self._size = 0
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._stream:
            self._size += len(chunk)
            if self._capture and len(self._buffer) < BODY_LOG_LIMIT:
                self._buffer.extend(chunk[: BODY_LOG_LIMIT - len(self._buffer)])
            yield chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.close()
        finally:
            self._on_close(bytes(self._buffer), self._size)


class LoggingTransport(httpx.BaseTransport):
    """Transport wrapper that records each exchange to an append-only log file.

    The log file is opened on construction, so an unwritable path raises ``OSError``
    here rather than on the first request. Records for concurrent requests are
    serialized through a lock; each record is a single line.
    """

    def __init__(self, wrapped: httpx.BaseTransport, log_path: Path) -> None:
        self._wrapped = wrapped
        self.log_path = Path(log_path)
        self._log_file = self.log_path.open("a", encoding="utf-8")
        self._lock = threading.Lock()

    @property
    def wrapped(self) -> httpx.BaseTransport:
        return self._wrapped

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        started = time.monotonic()
        record = self._request_record(request)
        try:
            response = self._wrapped.handle_request(request)
        except Exception as exc:
            record["error"] = f"{type(exc).__name__}: {exc}"
            record["elapsed_ms"] = _elapsed_ms(started)
            self._write(record)
            raise

        capture = _is_text(response.headers)
        in_memory = isinstance(response.stream, httpx.ByteStream)
        encoding = response.headers.get("content-encoding")

        def finish(body: bytes, size: int) -> None:
            record["status_code"] = response.status_code
            record["response_headers"] = _redact(response.headers)
            record["response_size"] = size
            if not capture:
                record["response_body"] = f"<{size} bytes omitted>"
            elif encoding and not in_memory:
                record["response_body"] = _render_encoded_body(body, size, encoding)
            else:
                record["response_body"] = _render_body(body, size)
            record["elapsed_ms"] = _elapsed_ms(started)
            self._write(record)

        if in_memory:
            # In-memory responses are already loaded, decoded, and never iterated again.
            content = response.content
            finish(content[:BODY_LOG_LIMIT], len(content))
            return response

        response.stream = _RecordingStream(response.stream, capture, finish)
        return response

    def close(self) -> None:
        try:
            self._wrapped.close()
        finally:
            with self._lock:
                if not self._log_file.closed:
                    self._log_file.close()

    def _request_record(self, request: httpx.Request) -> Dict[str, Any]:
        try:
            content = request.content
        except httpx.RequestNotRead:
            body: Optional[str] = "<streamed body omitted>"
        else:
            body = _render_body(content[:BODY_LOG_LIMIT], len(content)) if content else None
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": request.method,
            "url": str(request.url),
            "request_headers": _redact(request.headers),
            "request_body": body,
        }

    def _write(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock:
            if self._log_file.closed:
                return
            self._log_file.write(line + "\n")
            self._log_file.flush()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _redact(headers: httpx.Headers) -> Dict[str, str]:
    return {key: ("<redacted>" if key.lower() in REDACTED_HEADERS else value) for key, value in headers.items()}


def _is_text(headers: httpx.Headers) -> bool:
    content_type = headers.get("content-type", "").lower()
    return content_type.startswith(TEXT_CONTENT_TYPES)


def _render_body(body: bytes, size: int) -> str:
    text = body.decode("utf-8", errors="replace")
    if size > len(body):
        text += f"... <truncated, {size} bytes total>"
    return text


def _render_encoded_body(raw: bytes, size: int, encoding: str) -> str:
    """Decode a compressed body copy with httpx's own decoders before rendering it."""
    encodings = [value.strip().lower() for value in encoding.split(",") if value.strip()]
    if not set(encodings) <= LOGGED_CONTENT_ENCODINGS:
        return f"<{size} bytes omitted>"
    try:
        decoded = httpx.Response(200, headers={"Content-Encoding": encoding}, content=raw).content
    except httpx.DecodingError:
        return f"<{size} bytes omitted>"
    text = decoded[:BODY_LOG_LIMIT].decode("utf-8", errors="replace")
    if size > len(raw) or len(decoded) > BODY_LOG_LIMIT:
        text += f"... <truncated, {size} encoded bytes total>"
    return text


def select_transport(config: "EffectiveConfig", base: Optional[httpx.BaseTransport] = None) -> httpx.BaseTransport:
    """Return the transport for all catalog calls.

    A logging wrapper is built only when API logging is enabled; if it cannot be built
    the base transport is returned so API calls keep working without a log.
    """
    base = base if base is not None else create_base_transport()
    if not config.log_api_requests:
        return base

    log_path = Path(API_LOG_NAME)
    if config.save_path and Path(config.save_path).is_dir():
        log_path = Path(config.save_path) / API_LOG_NAME
    elif config.save_path:
        logger.warning("Save path '%s' not found, saving %s to current directory.", config.save_path, API_LOG_NAME)
    else:
        logger.warning("Save path not configured, saving %s to current directory.", API_LOG_NAME)

    try:
        transport = LoggingTransport(base, log_path)
    except OSError as exc:
        logger.error("Failed to initialize API logging transport, logging disabled: %s", exc)
        return base
    logger.info("API logging to file: %s", log_path)
    return transport
