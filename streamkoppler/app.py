"""HTTP host for the streamkoppler engine.

Exposes one streaming endpoint per configured provider. The request body is
forwarded upstream unchanged; the decoded output events are re-encoded as
server-sent events:

    event: text_delta
    data: {"type": "text_delta", "text": "Hi"}

and the stream ends with `data: [DONE]`.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import DEFAULT_CONFIG_PATH, load_config
from .config_reload import ConfigWatcher
from .engine import StreamEngine
from .events import OutputEvent, event_to_dict
from .logging_utils import setup_logging
from .rate_limits import format_rate_limit_summary

LOG = logging.getLogger(__name__)

_DISCONNECT_POLL_SECONDS = 0.5


def sse_event(event: OutputEvent) -> bytes:
    """Encode one output event as an SSE record."""
    payload = event_to_dict(event)
    return f"event: {payload['type']}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8090")
    return parsed.hostname, parsed.port


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            LOG.info("client disconnected, cancelling stream")
            cancel.set()
            return
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


async def stream_events(
    engine: StreamEngine,
    provider: str,
    payload: dict[str, Any],
    *,
    cancel: asyncio.Event,
    request_id: str,
) -> AsyncGenerator[bytes, None]:
    """Encode one engine stream as SSE bytes, terminated by `[DONE]`."""
    try:
        async for event in engine.stream(provider, payload, cancel=cancel, request_id=request_id):
            yield sse_event(event)
        yield b"data: [DONE]\n\n"
    finally:
        cancel.set()


def create_app(config_path: str | None = None, *, engine: StreamEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    cfg = load_config(config_path)
    setup_logging(cfg.logging)
    engine = engine or StreamEngine(cfg)
    config_file = Path(config_path or os.getenv("STREAMKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH)

    async def apply_config(path: Path) -> None:
        new_cfg = load_config(str(path))
        setup_logging(new_cfg.logging)
        await engine.reload(new_cfg)

    watcher = ConfigWatcher(config_file, apply_config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        await engine.start()
        reload_task = asyncio.create_task(watcher.run())
        try:
            yield
        finally:
            reload_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reload_task
            await engine.close()

    app = FastAPI(title="streamkoppler", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return configured providers and their last known rate limits."""
        providers = []
        for provider in engine.cfg.providers:
            snapshot = engine.last_rate_limits.get(provider.name)
            providers.append(
                {
                    "name": provider.name,
                    "protocol": provider.protocol,
                    "rate_limits": format_rate_limit_summary(snapshot) if snapshot is not None else None,
                    "rate_limits_stale": snapshot.is_stale() if snapshot is not None else None,
                }
            )
        return JSONResponse({"service": "streamkoppler", "status": "ok", "providers": providers})

    @app.post("/v1/streams/{provider}")
    async def v1_stream(provider: str, request: Request) -> StreamingResponse:
        """Forward one request upstream and stream canonical output events."""
        try:
            engine.cfg.provider(provider)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Request body must be JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")

        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        cancel = asyncio.Event()
        LOG.debug("stream request request=%s provider=%s", request_id, provider)

        async def body() -> AsyncGenerator[bytes, None]:
            watcher_task = asyncio.create_task(_watch_disconnect(request, cancel))
            try:
                async for chunk in stream_events(engine, provider, payload, cancel=cancel, request_id=request_id):
                    yield chunk
            finally:
                watcher_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher_task

        return StreamingResponse(
            body(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Request-Id": request_id},
        )

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="streamkoppler event-stream service")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    if not cfg.providers:
        fail("No providers configured. Provide --config <file> with at least one entry under 'providers'.")

    try:
        app = create_app(args.config)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    try:
        host, port = _service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)
