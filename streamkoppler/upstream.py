"""Streaming HTTP client for the configured upstream providers."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncGenerator, Callable

import httpx

from .accounts import Credentials
from .client_cache import ClientCache
from .config import ProviderConfig
from .errors import MalformedUpstreamData, error_from_response
from .json_helpers import bounded_text, to_bounded_json
from .rate_limits import RateLimitSnapshot, parse_rate_limit_headers, parse_usage_limit_error, snapshot_from_usage_limit

LOG = logging.getLogger(__name__)

RateLimitCallback = Callable[[RateLimitSnapshot], None]


def build_headers(provider: ProviderConfig, credentials: Credentials | None = None) -> dict[str, str]:
    """Authentication and protocol headers for one provider request."""
    headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
    if provider.protocol == "anthropic":
        headers["anthropic-version"] = provider.anthropic_version
        if credentials is not None:
            headers["Authorization"] = f"Bearer {credentials.bearer_token}"
        elif provider.api_key:
            headers["x-api-key"] = provider.api_key
    elif credentials is not None:
        headers.update(credentials.headers())
    elif provider.api_key:
        headers["Authorization"] = f"Bearer {provider.api_key}"
    headers.update(provider.headers)
    return headers


def _timeout(provider: ProviderConfig) -> httpx.Timeout:
    return httpx.Timeout(
        connect=provider.connect_timeout_seconds,
        read=provider.read_timeout_seconds,
        write=120.0,
        pool=provider.connect_timeout_seconds,
    )


class UpstreamClient:
    """Opens one streaming POST per attempt and yields decoded text chunks."""

    def __init__(self, cache: ClientCache) -> None:
        self.cache = cache

    async def open_stream(
        self,
        provider: ProviderConfig,
        payload: dict[str, Any],
        credentials: Credentials | None = None,
        *,
        trace_id: str | None = None,
        on_rate_limits: RateLimitCallback | None = None,
    ) -> AsyncGenerator[str, None]:
        """Stream the raw response body of one upstream request.

        Non-2xx responses raise a typed `UpstreamError` built from the body.
        """
        req_payload = dict(payload)
        req_payload["stream"] = True
        headers = build_headers(provider, credentials)
        tag = trace_id or "-"
        started = time.monotonic()
        chunk_count = 0
        LOG.debug(
            "upstream stream start trace=%s provider=%s path=%s payload=%s",
            tag,
            provider.name,
            provider.path,
            to_bounded_json(req_payload),
        )

        async with self.cache.lease(provider.base_url.rstrip("/"), headers, _timeout(provider)) as client:
            response: httpx.Response | None = None
            try:
                response = await client.send(
                    client.build_request("POST", provider.path, json=req_payload),
                    stream=True,
                )
                snapshot = parse_rate_limit_headers(response.headers)

                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    if snapshot is None:
                        usage_limit = parse_usage_limit_error(body)
                        if usage_limit is not None:
                            snapshot = snapshot_from_usage_limit(usage_limit)
                    if snapshot is not None and on_rate_limits is not None:
                        on_rate_limits(snapshot)
                    LOG.debug(
                        "upstream error response trace=%s status=%s body=%s",
                        tag,
                        response.status_code,
                        bounded_text(body),
                    )
                    raise error_from_response(response.status_code, body, snapshot=snapshot)

                if snapshot is not None and on_rate_limits is not None:
                    on_rate_limits(snapshot)

                content_type = response.headers.get("content-type", "")
                if "application/json" in content_type:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    if parse_usage_limit_error(body) is not None:
                        raise error_from_response(429, body, snapshot=snapshot)
                    raise MalformedUpstreamData(
                        f"upstream returned JSON instead of an event stream: {bounded_text(body)}",
                        status_code=response.status_code,
                        body=body,
                    )

                async for text in response.aiter_text():
                    if not text:
                        continue
                    chunk_count += 1
                    yield text
                LOG.debug(
                    "upstream stream ended trace=%s elapsed=%.3fs chunks=%s",
                    tag,
                    time.monotonic() - started,
                    chunk_count,
                )
            except asyncio.CancelledError:
                LOG.debug(
                    "upstream stream cancelled trace=%s elapsed=%.3fs chunks=%s",
                    tag,
                    time.monotonic() - started,
                    chunk_count,
                )
                raise
            finally:
                cleanup_cancelled = False
                if response is not None:
                    try:
                        await asyncio.shield(response.aclose())
                    except asyncio.CancelledError:
                        cleanup_cancelled = True
                    except Exception:
                        pass
                LOG.debug(
                    "upstream stream closed trace=%s elapsed=%.3fs chunks=%s",
                    tag,
                    time.monotonic() - started,
                    chunk_count,
                )
                if cleanup_cancelled:
                    raise asyncio.CancelledError
