# streaming.py
"""
Decode an OpenAI-compatible streaming chat completion into text tokens.

Wire format, one event per line (blank lines between events are ignored):
    data: {"choices":[{"delta":{"content":"Hi"}}]}
    : keep-alive comment
    data: [DONE]
"""

import re
from typing import Any, AsyncIterable, AsyncIterator, Optional, Union

import httpx
import orjson
import structlog

from errors import MalformedStreamData

log = structlog.get_logger(__name__)

DATA = b"data:"
DONE = b"[DONE]"
MAX_CONSECUTIVE_FAILURES = 5
# SSE allows CRLF, LF or a bare CR as the line terminator
LINE_BREAK = re.compile(rb"\r\n|\r|\n")

ByteSource = Union[httpx.Response, AsyncIterable[bytes]]


def _delta_content(chunk: Any) -> Optional[str]:
    if not isinstance(chunk, dict):
        return None
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


def _payload(line: bytes) -> Optional[bytes]:
    """Return the data payload of a complete line, or None if it carries none."""
    line = line.strip()
    if not line or line.startswith(b":"):
        return None
    if not line.startswith(DATA):
        return None
    return line[len(DATA):].strip()


async def _close(source: ByteSource) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


async def parse_sse_stream(source: ByteSource) -> AsyncIterator[str]:
    """Yield non-empty content deltas from `source` until `[DONE]` or exhaustion.

    `source` is an httpx response opened with stream=True, or any async
    iterable of bytes. It is closed on every exit path, including when the
    consumer stops iterating early.

    Raises MalformedStreamData once MAX_CONSECUTIVE_FAILURES frames in a row
    fail to decode; isolated bad frames are logged and skipped.
    """
    chunks = source.aiter_bytes() if isinstance(source, httpx.Response) else source
    buffer = b""
    failures = 0

    def decode(payload: bytes) -> Optional[str]:
        nonlocal failures
        try:
            chunk = orjson.loads(payload)
        except orjson.JSONDecodeError:
            failures += 1
            log.warning("stream.frame_decode_failed", payload=payload[:200].decode("utf-8", "replace"), consecutive=failures)
            if failures >= MAX_CONSECUTIVE_FAILURES:
                raise MalformedStreamData(
                    "Server is sending malformed response data. "
                    "Check that your server supports the OpenAI streaming format."
                )
            return None
        failures = 0
        return _delta_content(chunk)

    try:
        async for chunk in chunks:
            if not chunk:
                continue
            buffer += chunk
            *lines, buffer = LINE_BREAK.split(buffer)
            for line in lines:
                payload = _payload(line)
                if payload is None:
                    continue
                if payload == DONE:
                    return
                content = decode(payload)
                if content:
                    yield content

        # Servers may omit the final line terminator
        payload = _payload(buffer)
        if payload and payload != DONE:
            content = decode(payload)
            if content:
                yield content
    finally:
        await _close(source)


async def stream_to_string(source: ByteSource) -> str:
    """Drain a stream into one string; a non-streaming fallback for callers."""
    parts = []
    async for token in parse_sse_stream(source):
        parts.append(token)
    return "".join(parts)
