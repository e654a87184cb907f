"""
Tests for the streaming controller.
Run with: pytest tests/test_stream.py
"""

import asyncio
import json

import httpx
import pytest

from relaychat.errors import (
    BadRequest,
    HttpError,
    InsufficientBalance,
    InvalidCredential,
    RateLimited,
    TransportError,
)
from relaychat.stream import CancellationToken, StreamController, StreamStatus

DONE = b"data: [DONE]\n\n"


async def _run(controller, config, token=None, context=(), text="hi"):
    deltas, finishes = [], []
    result = await controller.stream(
        config,
        list(context),
        text,
        token or CancellationToken(),
        on_delta=deltas.append,
        on_finish=finishes.append,
    )
    return result, deltas, finishes


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_request_headers_and_body(config, sse_transport):
    """POST goes to /chat/completions with bearer auth, hints and streaming body."""
    transport, requests = sse_transport([DONE])
    context = [{"role": "user", "content": "earlier question"}]
    await _run(StreamController(transport=transport), config, context=context, text="2+2?")

    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "http://fake-openrouter/api/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-or-test-1234567890"
    assert request.headers["HTTP-Referer"] == "https://chat.example.com"
    assert request.headers["X-Title"] == "Chat Example"
    assert request.headers["Content-Type"] == "application/json"

    body = json.loads(request.content)
    assert body == {
        "model": "openai/gpt-4o",
        "messages": [
            {"role": "user", "content": "earlier question"},
            {"role": "user", "content": "2+2?"},
        ],
        "stream": True,
        "max_tokens": 4000,
    }


def test_optional_hints_omitted(config):
    """No referer/title configured means no such headers."""
    bare = config.with_changes(referer_url="", display_name="")
    headers = StreamController.build_headers(bare)
    assert "HTTP-Referer" not in headers
    assert "X-Title" not in headers


def test_max_tokens_precedence(config):
    """Explicit max_tokens beats Config, which beats the default."""
    assert StreamController.build_body(config, [], "x", 123)["max_tokens"] == 123
    assert StreamController.build_body(config.with_changes(max_tokens=50), [], "x")["max_tokens"] == 50
    assert StreamController.build_body(config, [], "x")["max_tokens"] == 4000


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_completes(config, sse_transport, frame):
    """Deltas arrive in order, DONE completes, on_finish fires once."""
    transport, _ = sse_transport([frame("Hel"), frame("lo"), DONE])
    result, deltas, finishes = await _run(StreamController(transport=transport), config)

    assert deltas == ["Hel", "lo"]
    assert result.status is StreamStatus.COMPLETED
    assert result.ok
    assert result.content == "Hello"
    assert result.deltas == 2
    assert finishes == [result]


@pytest.mark.asyncio
async def test_stops_reading_at_done(config, sse_transport, frame):
    """Anything after the sentinel is ignored."""
    transport, _ = sse_transport([frame("4"), DONE, frame("ignored")])
    result, deltas, _ = await _run(StreamController(transport=transport), config)
    assert deltas == ["4"]
    assert result.status is StreamStatus.COMPLETED


@pytest.mark.asyncio
async def test_eof_without_done_completes(config, sse_transport, frame):
    """Upstream closing without [DONE] still completes, trailing frame included."""
    tail = frame("!").rstrip(b"\n")
    transport, _ = sse_transport([frame("ok"), tail])
    result, deltas, finishes = await _run(StreamController(transport=transport), config)
    assert deltas == ["ok", "!"]
    assert result.status is StreamStatus.COMPLETED
    assert len(finishes) == 1


@pytest.mark.asyncio
async def test_malformed_frames_are_skipped(config, sse_transport, frame):
    """A broken frame is counted and skipped; the stream carries on."""
    chunks = [frame("A"), b"data: {oops\n\n", b": heartbeat\n\n", frame("B"), DONE]
    transport, _ = sse_transport(chunks)
    result, deltas, _ = await _run(StreamController(transport=transport), config)
    assert deltas == ["A", "B"]
    assert result.skipped_frames == 1
    assert result.status is StreamStatus.COMPLETED


@pytest.mark.asyncio
async def test_frames_split_across_chunks(config, sse_transport, frame):
    """Frames cut at arbitrary byte offsets are reassembled."""
    raw = frame("Grüße") + frame(" 世界") + DONE
    chunks = [raw[i:i + 7] for i in range(0, len(raw), 7)]
    transport, _ = sse_transport(chunks)
    result, deltas, _ = await _run(StreamController(transport=transport), config)
    assert "".join(deltas) == "Grüße 世界"
    assert result.ok


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("status, error_cls", [
    (400, BadRequest),
    (401, InvalidCredential),
    (402, InsufficientBalance),
    (429, RateLimited),
    (500, HttpError),
    (503, HttpError),
])
async def test_http_errors_classified(config, status, error_cls):
    """Failure statuses become the matching ChatError, reported once."""
    transport = httpx.MockTransport(
        lambda request: httpx.Response(status, json={"error": {"message": "nope"}})
    )
    result, deltas, finishes = await _run(StreamController(transport=transport), config)

    assert result.status is StreamStatus.FAILED
    assert isinstance(result.error, error_cls)
    assert result.error.status_code == status
    assert deltas == []
    assert finishes == [result]


@pytest.mark.asyncio
async def test_generic_http_error_carries_body(config):
    """Unmapped statuses keep status and body text in the message."""
    transport = httpx.MockTransport(lambda request: httpx.Response(502, text="Bad Gateway"))
    result, _, _ = await _run(StreamController(transport=transport), config)
    assert result.error.user_message == "Error: HTTP error! status: 502 - Bad Gateway"


@pytest.mark.asyncio
async def test_long_error_body_kept_whole(config):
    """The message carries the full upstream body, not a prefix."""
    body_text = "upstream exploded: " + "x" * 500
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text=body_text))
    result, _, _ = await _run(StreamController(transport=transport), config)
    assert result.error.detail == body_text
    assert result.error.user_message == f"Error: HTTP error! status: 500 - {body_text}"


@pytest.mark.asyncio
async def test_connection_refused_is_transport_error(config):
    """No response at all surfaces as TransportError."""
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result, deltas, finishes = await _run(
        StreamController(transport=httpx.MockTransport(handler)), config,
    )
    assert result.status is StreamStatus.FAILED
    assert isinstance(result.error, TransportError)
    assert "refused" in result.error.detail
    assert len(finishes) == 1


@pytest.mark.asyncio
async def test_dropped_connection_mid_stream(config, frame):
    """A read error after some deltas fails the stream."""
    async def body():
        yield frame("par")
        raise httpx.ReadError("connection reset")

    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body()))
    result, deltas, _ = await _run(StreamController(transport=transport), config)
    assert deltas == ["par"]
    assert result.status is StreamStatus.FAILED
    assert isinstance(result.error, TransportError)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_aborts_pending_read(config, sse_transport, frame):
    """Cancelling while the upstream stalls ends the stream immediately."""
    gate = asyncio.Event()
    transport, _ = sse_transport([frame("Hel")], gate=gate, after_gate=[frame("lo"), DONE])
    token = CancellationToken()
    deltas, finishes = [], []
    first = asyncio.Event()

    def on_delta(text):
        deltas.append(text)
        first.set()

    task = asyncio.create_task(StreamController(transport=transport).stream(
        config, [], "hi", token, on_delta=on_delta, on_finish=finishes.append,
    ))
    await asyncio.wait_for(first.wait(), timeout=2)
    token.cancel()
    result = await asyncio.wait_for(task, timeout=2)

    assert result.status is StreamStatus.CANCELLED
    assert deltas == ["Hel"]
    assert finishes == [result]


@pytest.mark.asyncio
async def test_no_delta_after_cancel(config, sse_transport, frame):
    """Frames already buffered are not delivered once the token fires."""
    transport, _ = sse_transport([frame("a") + frame("b") + frame("c") + DONE])
    token = CancellationToken()
    deltas = []

    def on_delta(text):
        deltas.append(text)
        token.cancel()

    finishes = []
    result = await StreamController(transport=transport).stream(
        config, [], "hi", token, on_delta=on_delta, on_finish=finishes.append,
    )
    assert deltas == ["a"]
    assert result.status is StreamStatus.CANCELLED
    assert len(finishes) == 1


@pytest.mark.asyncio
async def test_cancelled_before_start_sends_nothing(config, sse_transport):
    """A token cancelled up front never opens a connection."""
    transport, requests = sse_transport([DONE])
    token = CancellationToken()
    token.cancel()
    result, _, finishes = await _run(StreamController(transport=transport), config, token=token)
    assert requests == []
    assert result.status is StreamStatus.CANCELLED
    assert len(finishes) == 1


def test_token_is_idempotent():
    """cancel() can be called repeatedly."""
    token = CancellationToken()
    assert not token.is_cancelled
    token.cancel()
    token.cancel()
    assert token.is_cancelled


# ---------------------------------------------------------------------------
# Terminal callback guarantees
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_raising_sink_still_finishes(config, sse_transport, frame):
    """An exception from on_delta propagates after on_finish has fired."""
    transport, _ = sse_transport([frame("a"), frame("b"), DONE])
    finishes = []

    def on_delta(text):
        raise ValueError("sink broke")

    with pytest.raises(ValueError, match="sink broke"):
        await StreamController(transport=transport).stream(
            config, [], "hi", CancellationToken(), on_delta=on_delta, on_finish=finishes.append,
        )

    assert len(finishes) == 1
    assert finishes[0].status is StreamStatus.FAILED
    assert "sink broke" in finishes[0].error.detail


@pytest.mark.asyncio
async def test_outer_cancel_waits_for_pump(config, frame):
    """Cancelling the calling task unwinds the read before re-raising."""
    gate = asyncio.Event()
    first = asyncio.Event()
    body_closed = []

    async def body():
        try:
            yield frame("Hel")
            await gate.wait()
            yield DONE
        finally:
            body_closed.append(True)

    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body()))
    finishes = []
    task = asyncio.create_task(StreamController(transport=transport).stream(
        config, [], "hi", CancellationToken(),
        on_delta=lambda text: first.set(), on_finish=finishes.append,
    ))
    await asyncio.wait_for(first.wait(), timeout=2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert body_closed == [True]
    assert len(finishes) == 1
    assert finishes[0].status is StreamStatus.CANCELLED
