"""
Stream Controller — one streaming chat completion per call.

Opens the POST, pumps the response body through FrameDecoder and
extract_delta, and hands every fragment to the caller's on_delta sink.
Exactly one terminal outcome is reported per call: COMPLETED, CANCELLED or
FAILED (with a classified ChatError).

Cancellation aborts the in-flight read: the pump runs as its own task and is
cancelled the moment the token fires, so a stalled upstream never holds the
caller hostage. There is no timeout of our own; callers that want one cancel
the token on a timer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import httpx

from relaychat.config import Config
from relaychat.errors import ChatError, TransportError, classify_status
from relaychat.sse import DeltaKind, FrameDecoder, extract_delta

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4000


class CancellationToken:
    """One per submission. cancel() is idempotent."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


class StreamStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class StreamResult:
    """Terminal outcome of one stream."""
    status: StreamStatus = StreamStatus.COMPLETED
    error: ChatError | None = None
    deltas: int = 0
    skipped_frames: int = 0
    _buffer: list[str] = field(default_factory=list, repr=False)

    @property
    def content(self) -> str:
        """Everything delivered to on_delta, in order."""
        return "".join(self._buffer)

    @property
    def ok(self) -> bool:
        return self.status is StreamStatus.COMPLETED


DeltaSink = Callable[[str], None]
FinishSink = Callable[[StreamResult], None]


class StreamController:
    """
    Stateless across calls: every stream() gets its own client, decoder and
    result. transport is injectable (httpx.MockTransport in tests, or a
    relay-facing transport).
    """

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self.transport = transport

    @staticmethod
    def build_headers(config: Config) -> dict:
        """Bearer auth plus the optional OpenRouter attribution hints."""
        headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }
        if config.referer_url:
            headers["HTTP-Referer"] = config.referer_url
        if config.display_name:
            headers["X-Title"] = config.display_name
        return headers

    @staticmethod
    def build_body(
        config: Config,
        context: list[dict],
        text: str,
        max_tokens: int | None = None,
    ) -> dict:
        messages = [{"role": m["role"], "content": m["content"]} for m in context]
        messages.append({"role": "user", "content": text})
        return {
            "model": config.model,
            "messages": messages,
            "stream": True,
            "max_tokens": max_tokens or config.max_tokens or DEFAULT_MAX_TOKENS,
        }

    async def stream(
        self,
        config: Config,
        context: list[dict],
        text: str,
        token: CancellationToken,
        on_delta: DeltaSink,
        on_finish: FinishSink | None = None,
        max_tokens: int | None = None,
    ) -> StreamResult:
        """
        Run one request to its terminal event. Returns the same result
        on_finish receives. on_finish fires exactly once, also when on_delta
        raises or the calling task is cancelled; those exceptions propagate
        after it.
        """
        body = self.build_body(config, context, text, max_tokens)
        result = StreamResult()
        pump = None

        try:
            if token.is_cancelled:
                result.status = StreamStatus.CANCELLED
                return result

            pump = asyncio.ensure_future(self._pump(config, body, token, on_delta, result))
            waiter = asyncio.ensure_future(token.wait())
            try:
                await asyncio.wait({pump, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()

            if not pump.done():
                # Token fired first: abort the pending read.
                pump.cancel()
                await asyncio.wait({pump})
                result.status = StreamStatus.CANCELLED
            elif pump.cancelled():
                result.status = StreamStatus.CANCELLED
            else:
                pump.result()
            return result
        except asyncio.CancelledError:
            if pump is not None and not pump.done():
                pump.cancel()
                await asyncio.gather(pump, return_exceptions=True)
            result.status = StreamStatus.CANCELLED
            raise
        except Exception as e:
            # Unclassified, e.g. raised by on_delta. The stream itself is over.
            result.status = StreamStatus.FAILED
            result.error = ChatError(f"{e.__class__.__name__}: {e}")
            raise
        finally:
            self._finish(config, result, on_finish)

    def _finish(self, config: Config, result: StreamResult, on_finish: FinishSink | None):
        if result.status is StreamStatus.FAILED:
            logger.warning(
                "Stream for model '%s' failed (%s): %s",
                config.model, result.error.kind, result.error.detail[:200],
            )
        else:
            logger.info(
                "Stream for model '%s' %s: %d deltas, %d skipped frames",
                config.model, result.status.value, result.deltas, result.skipped_frames,
            )

        if on_finish is not None:
            on_finish(result)

    async def _pump(
        self,
        config: Config,
        body: dict,
        token: CancellationToken,
        on_delta: DeltaSink,
        result: StreamResult,
    ):
        """Read the response until the sentinel, EOF, or the token fires."""
        url = f"{config.base_url.rstrip('/')}/chat/completions"
        logger.debug("POST %s model=%s messages=%d", url, body["model"], len(body["messages"]))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async with client.stream(
                    "POST",
                    url,
                    headers=self.build_headers(config),
                    json=body,
                ) as resp:
                    if resp.status_code >= 400:
                        raw = await resp.aread()
                        text = raw.decode("utf-8", errors="replace")
                        raise classify_status(resp.status_code, text)

                    decoder = FrameDecoder()
                    async for frame in decoder.iter_frames(resp.aiter_bytes()):
                        if token.is_cancelled:
                            result.status = StreamStatus.CANCELLED
                            return
                        if frame.terminal:
                            result.status = StreamStatus.COMPLETED
                            return

                        delta = extract_delta(frame.data)
                        if delta.kind is DeltaKind.INVALID:
                            result.skipped_frames += 1
                            continue
                        if delta.kind is DeltaKind.EMPTY:
                            continue

                        result.deltas += 1
                        result._buffer.append(delta.text)
                        on_delta(delta.text)

            # Upstream closed without [DONE]; what arrived is the answer.
            result.status = StreamStatus.CANCELLED if token.is_cancelled else StreamStatus.COMPLETED
        except ChatError as e:
            result.status = StreamStatus.FAILED
            result.error = e
        except httpx.HTTPError as e:
            result.status = StreamStatus.FAILED
            result.error = TransportError(str(e) or e.__class__.__name__)
