import asyncio

import httpx
import pytest

from errors import MalformedStreamData
from streaming import MAX_CONSECUTIVE_FAILURES, parse_sse_stream, stream_to_string


class _Source:
    """Chunked byte source that records whether it was released."""

    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.closed = False
        self.sent = 0

    async def _gen(self):
        for c in self.chunks:
            self.sent += 1
            yield c

    def __aiter__(self):
        return self._gen()

    async def aclose(self):
        self.closed = True


async def _collect(src):
    return [tok async for tok in parse_sse_stream(src)]


def _tokens(chunks):
    return asyncio.run(_collect(_Source(chunks)))


def _frame(text: str) -> bytes:
    return ('data: {"choices":[{"delta":{"content":"%s"}}]}\n' % text).encode()


def _split_at(data: bytes, offsets):
    out, prev = [], 0
    for off in sorted(offsets):
        out.append(data[prev:off])
        prev = off
    out.append(data[prev:])
    return out


def test_literal_round_trip():
    chunks = [
        b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n',
        b"data: [DONE]\n\n",
    ]
    assert _tokens(chunks) == ["Hi"]


def test_done_stops_before_later_frames():
    src = _Source([_frame("a") + b"\ndata: [DONE]\n\n" + _frame("never") + b"\n"])
    assert asyncio.run(_collect(src)) == ["a"]
    assert src.closed is True


@pytest.mark.parametrize("offsets", [(1,), (5,), (40,), (1, 5, 40), (2, 47, 48, 60)])
def test_split_boundary_scenario(offsets):
    data = _frame("A") + _frame("B") + b"data: [DONE]\n"
    assert _tokens(_split_at(data, offsets)) == ["A", "B"]


def test_chunk_boundary_invariance():
    data = (
        b": keep-alive\n\n"
        + _frame("Hello")
        + b"\n"
        + 'data: {"choices":[{"delta":{"content":"café ☕"}}]}\n\n'.encode("utf-8")
        + b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        + _frame(" world")
        + b"\ndata: [DONE]\n\n"
    )
    expected = _tokens([data])
    assert expected == ["Hello", "café ☕", " world"]
    for size in range(1, 9):
        chunks = [data[i:i + size] for i in range(0, len(data), size)]
        assert _tokens(chunks) == expected, size
    for cut in range(1, len(data)):
        assert _tokens([data[:cut], data[cut:]]) == expected, cut


def test_comments_blank_and_foreign_lines_are_ignored():
    chunks = [
        b":heartbeat\n",
        b"\n",
        b"event: message\n",
        b"id: 7\n",
        _frame("x"),
        b'data: {"choices":[{"delta":{"content":""}}]}\n',
        b'data: {"choices":[]}\n',
        b"data: [DONE]\n",
    ]
    assert _tokens(chunks) == ["x"]


def test_malformed_frames_below_threshold_are_skipped():
    bad = b"data: {not json\n"
    chunks = [bad] * (MAX_CONSECUTIVE_FAILURES - 1) + [_frame("ok"), b"data: [DONE]\n"]
    assert _tokens(chunks) == ["ok"]


def test_successful_frame_resets_failure_run():
    bad = b"data: {broken\n"
    run = [bad] * (MAX_CONSECUTIVE_FAILURES - 1)
    chunks = run + [_frame("a")] + run + [_frame("b"), b"data: [DONE]\n"]
    assert _tokens(chunks) == ["a", "b"]


def test_malformed_threshold_raises_and_releases_source():
    src = _Source([b"data: nope\n"] * MAX_CONSECUTIVE_FAILURES + [_frame("late")])
    with pytest.raises(MalformedStreamData):
        asyncio.run(_collect(src))
    assert src.closed is True


def test_trailing_line_without_terminator_is_decoded():
    src = _Source([_frame("one"), b'data: {"choices":[{"delta":{"content":"two"}}]}'])
    assert asyncio.run(_collect(src)) == ["one", "two"]
    assert src.closed is True


def test_trailing_done_or_garbage_yields_nothing():
    assert _tokens([_frame("one"), b"data: [DONE]"]) == ["one"]
    assert _tokens([_frame("one"), b"data: {half"]) == ["one"]
    assert _tokens([_frame("one"), b"event: end"]) == ["one"]


def test_source_released_when_consumer_stops_early():
    async def run():
        src = _Source([_frame(str(i)) for i in range(10)])
        gen = parse_sse_stream(src)
        first = await gen.__anext__()
        await gen.aclose()
        return first, src

    first, src = asyncio.run(run())
    assert first == "0"
    assert src.closed is True
    assert src.sent < 10


def test_httpx_response_source_is_closed():
    async def body():
        yield _frame("from")
        yield _frame(" httpx")
        yield b"data: [DONE]\n"

    async def run():
        resp = httpx.Response(200, content=body())
        text = await stream_to_string(resp)
        return text, resp.is_closed

    text, closed = asyncio.run(run())
    assert text == "from httpx"
    assert closed is True


@pytest.mark.parametrize("eol", [b"\r", b"\r\n", b"\n"])
def test_every_sse_line_terminator_is_accepted(eol):
    data = (
        b'data: {"choices":[{"delta":{"content":"A"}}]}' + eol + eol
        + b": ping" + eol
        + b'data: {"choices":[{"delta":{"content":"B"}}]}' + eol + eol
        + b"data: [DONE]" + eol + eol
    )
    assert _tokens([data]) == ["A", "B"]
    assert _tokens([data[i:i + 3] for i in range(0, len(data), 3)]) == ["A", "B"]
