"""
Shared fixtures: fake OpenRouter-style SSE endpoints built on httpx.MockTransport.
"""

import json

import httpx
import pytest

from relaychat.config import Config


def _frame(content: str) -> bytes:
    chunk = {"choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(chunk)}\n\n".encode()


@pytest.fixture
def frame():
    """Build one `data: {...}` content frame."""
    return _frame


@pytest.fixture
def config():
    return Config(
        api_key="sk-or-test-1234567890",
        model="openai/gpt-4o",
        referer_url="https://chat.example.com",
        display_name="Chat Example",
        base_url="http://fake-openrouter/api/v1",
    )


@pytest.fixture
def sse_transport():
    """
    Factory for a transport that streams the given byte chunks.
    Every request is appended to the returned `requests` list.
    """
    def make(chunks, status_code=200, gate=None, after_gate=()):
        requests = []

        async def body():
            for chunk in chunks:
                yield chunk
            if gate is not None:
                await gate.wait()
                for chunk in after_gate:
                    yield chunk

        def handler(request):
            requests.append(request)
            return httpx.Response(
                status_code,
                headers={"content-type": "text/event-stream"},
                content=body(),
            )

        return httpx.MockTransport(handler), requests

    return make
