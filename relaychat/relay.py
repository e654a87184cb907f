"""
Relay — a cross-origin pass-through in front of the completions endpoint.

Browsers on a live domain can't call the provider directly, so a web front
end points its base_url at this relay instead. The relay adds nothing of its
own: status codes and streamed bytes come back unchanged, and the same
auth/referer/title headers the client would have sent are forwarded.

    POST /api/openrouter/chat/completions  -> {upstream}/chat/completions
    GET  /                                  -> health probe
"""

from __future__ import annotations

import logging

import httpx
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from relaychat.config import DEFAULT_BASE_URL, get_settings

logger = logging.getLogger(__name__)

DEFAULT_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]
DEFAULT_REFERER = "https://github.com/relaychat/relaychat"
DEFAULT_TITLE = "relaychat"


def create_app(
    settings: dict | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the relay app. transport is injectable for tests."""
    cfg = (settings if settings is not None else get_settings()).get("relay", {})
    upstream = (cfg.get("upstream") or DEFAULT_BASE_URL).rstrip("/")
    default_referer = cfg.get("default_referer") or DEFAULT_REFERER
    default_title = cfg.get("default_title") or DEFAULT_TITLE

    app = FastAPI(title="relaychat relay")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("origins") or DEFAULT_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "HTTP-Referer", "X-Title"],
        allow_credentials=True,
    )

    @app.get("/")
    async def health():
        return {"status": "ok", "message": "Relay is running", "upstream": upstream}

    @app.post("/api/openrouter/chat/completions")
    async def chat_completions(request: Request):
        auth = request.headers.get("authorization")
        if not auth:
            return JSONResponse(
                {"status": "error", "message": "Authorization header is required"},
                status_code=401,
            )

        body = await request.body()
        headers = {
            "Authorization": auth,
            "Content-Type": "application/json",
            "HTTP-Referer": request.headers.get("http-referer") or default_referer,
            "X-Title": request.headers.get("x-title") or default_title,
        }
        target = f"{upstream}/chat/completions"

        client = httpx.AsyncClient(timeout=None, transport=transport)
        try:
            upstream_resp = await client.send(
                client.build_request("POST", target, headers=headers, content=body),
                stream=True,
            )
        except httpx.HTTPError as e:
            await client.aclose()
            logger.warning("Relay to %s failed: %s", target, e)
            return JSONResponse(
                {
                    "status": "error",
                    "message": "Failed to proxy request to OpenRouter",
                    "details": str(e),
                },
                status_code=502,
            )

        logger.info("Relayed %s -> HTTP %d", target, upstream_resp.status_code)

        # Runs after the body is sent or the caller disconnects, even if
        # iteration never started.
        cleanup = BackgroundTasks()
        cleanup.add_task(upstream_resp.aclose)
        cleanup.add_task(client.aclose)

        return StreamingResponse(
            upstream_resp.aiter_bytes(),
            status_code=upstream_resp.status_code,
            media_type=upstream_resp.headers.get("content-type", "text/event-stream"),
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            background=cleanup,
        )

    return app
