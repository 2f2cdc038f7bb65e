"""Bounded-lifetime cache of upstream HTTP clients."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Mapping

import httpx

LOG = logging.getLogger(__name__)

ClientFactory = Callable[[str, Mapping[str, str], httpx.Timeout], httpx.AsyncClient]


def _default_factory(base_url: str, headers: Mapping[str, str], timeout: httpx.Timeout) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, headers=dict(headers), timeout=timeout)


def cache_key(base_url: str, headers: Mapping[str, str]) -> str:
    """Endpoint plus sorted headers; equal keys share one client."""
    parts = [base_url.rstrip("/")]
    parts.extend(f"{name.lower()}={value}" for name, value in sorted(headers.items(), key=lambda kv: kv[0].lower()))
    return "|".join(parts)


@dataclass
class _Entry:
    client: httpx.AsyncClient
    last_used: float
    in_use: int = 0


class ClientCache:
    """Reuses `httpx.AsyncClient` instances per endpoint and header set.

    Entries idle for longer than `ttl_seconds` are dropped by `evict()`;
    clients leased to a running request are never evicted.
    """

    def __init__(
        self,
        factory: ClientFactory | None = None,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory or _default_factory
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, base_url: str, headers: Mapping[str, str], timeout: httpx.Timeout) -> httpx.AsyncClient:
        """Return the cached client for this key, creating it when missing."""
        key = cache_key(base_url, headers)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                LOG.debug("creating upstream client base_url=%s", base_url)
                entry = _Entry(client=self._factory(base_url, headers, timeout), last_used=self._clock())
                self._entries[key] = entry
            else:
                entry.last_used = self._clock()
            return entry.client

    @contextlib.asynccontextmanager
    async def lease(
        self,
        base_url: str,
        headers: Mapping[str, str],
        timeout: httpx.Timeout,
    ) -> AsyncIterator[httpx.AsyncClient]:
        """Hold a client for the duration of one request."""
        key = cache_key(base_url, headers)
        client = self.get(base_url, headers, timeout)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.in_use += 1
        try:
            yield client
        finally:
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None and entry.client is client:
                    entry.in_use = max(0, entry.in_use - 1)
                    entry.last_used = self._clock()

    def evict(self) -> list[httpx.AsyncClient]:
        """Remove idle entries past the TTL and return their clients for closing."""
        now = self._clock()
        expired: list[httpx.AsyncClient] = []
        with self._lock:
            for key, entry in list(self._entries.items()):
                if entry.in_use == 0 and now - entry.last_used >= self.ttl_seconds:
                    expired.append(entry.client)
                    del self._entries[key]
        if expired:
            LOG.debug("evicted %s idle upstream client(s)", len(expired))
        return expired

    async def aevict(self) -> int:
        """Evict expired entries and close their clients."""
        expired = self.evict()
        for client in expired:
            with contextlib.suppress(Exception):
                await client.aclose()
        return len(expired)

    async def close_all(self) -> None:
        with self._lock:
            clients = [entry.client for entry in self._entries.values()]
            self._entries.clear()
        for client in clients:
            with contextlib.suppress(Exception):
                await client.aclose()

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Periodically evict idle clients until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.aevict()
            except Exception as exc:
                LOG.warning("client cache sweep failed: %s", exc)
