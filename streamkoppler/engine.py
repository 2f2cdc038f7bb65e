"""Stream engine: upstream request, SSE reassembly, decoding, retries."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable

from .accounts import AccountProvider, Credentials
from .anthropic_decoder import AnthropicDecoder
from .batching import TextBatcher
from .client_cache import ClientCache
from .config import EngineConfig, ProviderConfig
from .conformance import fix_line
from .decoder_base import StreamDecoder
from .errors import RateLimitedError, RequestCancelled, UpstreamError, classify_error
from .events import Error, OutputEvent
from .logging_utils import request_logger
from .openai_decoder import OpenAIChunkDecoder
from .rate_limits import RateLimitSnapshot
from .responses_decoder import ResponsesDecoder
from .retry import RetryController, RetryPolicy
from .sse import SSEFrameDecoder
from .thinking import ThinkingBuffer
from .tool_calls import AppendOnly, DuplicateFragmentRepair
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)

_CANCELLED = object()


async def _anext(chunks: AsyncIterator[str]) -> str:
    return await chunks.__anext__()


async def _next_chunk(chunks: AsyncIterator[str], cancel: asyncio.Event) -> Any:
    """Next network chunk, `_CANCELLED` once the caller withdrew the request.

    Raises `StopAsyncIteration` at end of stream.
    """
    if cancel.is_set():
        return _CANCELLED
    reader = asyncio.ensure_future(_anext(chunks))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
    if reader.cancelled():
        return _CANCELLED
    return reader.result()


class StreamEngine:
    """Turns provider requests into ordered `OutputEvent` sequences.

    One engine serves many concurrent requests; every request gets its own
    decoder, thinking buffer and tool-call state. HTTP clients are shared
    through a `ClientCache` swept by a background task started in `start()`.
    """

    def __init__(
        self,
        cfg: EngineConfig,
        *,
        accounts: dict[str, AccountProvider] | None = None,
        cache: ClientCache | None = None,
        upstream: UpstreamClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self.accounts = dict(accounts or {})
        self.cache = cache or ClientCache(ttl_seconds=cfg.client_cache_ttl_seconds)
        self.upstream = upstream or UpstreamClient(self.cache)
        self.last_rate_limits: dict[str, RateLimitSnapshot] = {}
        self._sleep = sleep
        self._rand = rand
        self._clock = clock
        self._sweeper: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the periodic client-cache sweep."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self.cache.run_sweeper(self.cfg.client_cache_sweep_seconds))

    async def close(self) -> None:
        """Stop the sweep and close cached clients."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self.cache.close_all()

    async def reload(self, new_cfg: EngineConfig) -> None:
        """Swap configuration; requests already running keep their settings."""
        sweep_changed = new_cfg.client_cache_sweep_seconds != self.cfg.client_cache_sweep_seconds
        self.cfg = new_cfg
        self.cache.ttl_seconds = new_cfg.client_cache_ttl_seconds
        known = {provider.name for provider in new_cfg.providers}
        for name in list(self.last_rate_limits):
            if name not in known:
                del self.last_rate_limits[name]
        if sweep_changed and self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
            await self.start()
        LOG.info("engine configuration reloaded providers=%s", len(new_cfg.providers))

    def build_decoder(self, provider: ProviderConfig) -> tuple[StreamDecoder, SSEFrameDecoder]:
        """Fresh decoder and frame reassembler for one response."""
        decoding = self.cfg.decoding
        if provider.protocol == "anthropic":
            thinking = ThinkingBuffer(decoding.anthropic_thinking_flush_chars, enabled=decoding.output_thinking)
            batcher = TextBatcher(
                word_threshold=decoding.text_word_threshold,
                char_threshold=decoding.text_char_threshold,
                max_delay_ms=decoding.text_max_delay_ms,
                clock=self._clock,
            )
            decoder: StreamDecoder = AnthropicDecoder(thinking, batcher, placeholder=decoding.thinking_placeholder)
            return decoder, SSEFrameDecoder()
        if provider.protocol == "openai":
            thinking = ThinkingBuffer(decoding.openai_thinking_flush_chars, enabled=decoding.output_thinking)
            repair = DuplicateFragmentRepair() if decoding.repair_duplicate_fragments else AppendOnly()
            decoder = OpenAIChunkDecoder(thinking, repair=repair, placeholder=decoding.thinking_placeholder)
            return decoder, SSEFrameDecoder(line_hook=fix_line, split_data_lines=True)
        thinking = ThinkingBuffer(decoding.responses_thinking_flush_chars, enabled=decoding.output_thinking)
        return ResponsesDecoder(thinking, placeholder=decoding.thinking_placeholder), SSEFrameDecoder()

    def _remember_rate_limits(self, provider_name: str) -> Callable[[RateLimitSnapshot], None]:
        def _store(snapshot: RateLimitSnapshot) -> None:
            self.last_rate_limits[provider_name] = snapshot

        return _store

    async def stream(
        self,
        provider_name: str,
        payload: dict[str, Any],
        *,
        cancel: asyncio.Event | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[OutputEvent]:
        """Run one request and yield its output events in order.

        Raises `KeyError` for an unknown provider. Every other failure ends
        the sequence with a single `Error` event; cancellation ends it after
        the decoder flushed buffered text and thinking.
        """
        provider = self.cfg.provider(provider_name)
        cancel = cancel or asyncio.Event()
        request_id = request_id or uuid.uuid4().hex[:12]
        log = request_logger(LOG, request_id=request_id, provider=provider.name)
        controller = RetryController(
            RetryPolicy.from_config(self.cfg.retry),
            accounts=self.accounts.get(provider.name),
            sleep=self._sleep,
            rand=self._rand,
        )
        current: list[StreamDecoder] = []

        async def attempt(credentials: Credentials | None, number: int) -> AsyncIterator[OutputEvent]:
            decoder, frames = self.build_decoder(provider)
            current[:] = [decoder]
            log.debug("stream attempt started", extra={"attempt": number})
            chunks = self.upstream.open_stream(
                provider,
                payload,
                credentials,
                trace_id=request_id,
                on_rate_limits=self._remember_rate_limits(provider.name),
            )
            try:
                async for event in self._decode(chunks, frames, decoder, cancel):
                    yield event
            finally:
                with contextlib.suppress(Exception):
                    await chunks.aclose()

        try:
            async for item in controller.stream(attempt, label=f"{provider.name} stream", cancel=cancel):
                yield item
        except RequestCancelled:
            log.info("stream cancelled during backoff")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            events: list[OutputEvent] = []
            if current:
                # Emit what the decoder still buffers before reporting the failure.
                events.extend(current[0].on_cancel())
            events.append(self._error_event(exc))
            log.error("stream failed kind=%s error=%s", events[-1].kind, exc)
            for event in events:
                yield event

    async def _decode(
        self,
        chunks: AsyncIterator[str],
        frames: SSEFrameDecoder,
        decoder: StreamDecoder,
        cancel: asyncio.Event,
    ) -> AsyncIterator[OutputEvent]:
        while True:
            try:
                chunk = await _next_chunk(chunks, cancel)
            except StopAsyncIteration:
                break
            if chunk is _CANCELLED:
                LOG.info("stream cancelled by caller protocol=%s", decoder.protocol)
                for event in decoder.on_cancel():
                    yield event
                return
            for record in frames.feed(chunk):
                if record.is_done:
                    for event in decoder.on_stream_end():
                        yield event
                    return
                for event in decoder.on_record(record):
                    yield event
        for record in frames.finish():
            if record.is_done:
                break
            for event in decoder.on_record(record):
                yield event
        for event in decoder.on_stream_end():
            yield event

    @staticmethod
    def _error_event(exc: BaseException) -> Error:
        kind = classify_error(exc)
        message = exc.message if isinstance(exc, UpstreamError) else str(exc) or type(exc).__name__
        if isinstance(exc, RateLimitedError) and "reset" not in message:
            message = f"{message} ({exc.describe_reset()})"
        return Error(kind=kind.value, message=message)


async def collect(events: AsyncIterator[OutputEvent]) -> list[OutputEvent]:
    """Drain an event iterator into a list."""
    return [event async for event in events]
