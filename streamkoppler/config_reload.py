"""Reload the engine configuration when its YAML file changes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

LOG = logging.getLogger(__name__)


def event_touches_file(event: FileSystemEvent, file_name: str) -> bool:
    """True when a non-directory event refers to `file_name` (either side of a move)."""
    if getattr(event, "is_directory", False):
        return False
    for attr in ("src_path", "dest_path"):
        path = getattr(event, attr, None)
        if path and Path(str(path)).name == file_name:
            return True
    return False


class _ChangeSignal(FileSystemEventHandler):
    """Forwards matching watchdog events into the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, file_name: str) -> None:
        super().__init__()
        self._loop = loop
        self._changed = changed
        self._file_name = file_name

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event_touches_file(event, self._file_name):
            self._loop.call_soon_threadsafe(self._changed.set)


class ConfigWatcher:
    """Watches one config file and calls `on_change(path)` after edits settle.

    A failing reload callback is logged and the previous configuration stays
    active. Changes are debounced so editors that write in several steps
    trigger one reload.
    """

    def __init__(
        self,
        config_file: Path,
        on_change: Callable[[Path], Awaitable[None]],
        *,
        debounce_seconds: float = 0.2,
    ) -> None:
        self.config_file = config_file
        self._on_change = on_change
        self._debounce_seconds = debounce_seconds
        self._signature = self._file_signature()

    def _file_signature(self) -> tuple[float, int] | None:
        if not self.config_file.exists():
            return None
        stat = self.config_file.stat()
        return stat.st_mtime, stat.st_size

    async def check(self, *, force: bool = False) -> bool:
        """Reload when the file changed since the last successful reload."""
        signature = self._file_signature()
        if not force and (signature is None or signature == self._signature):
            return False
        LOG.info("config change detected path=%s, reloading", self.config_file)
        try:
            await self._on_change(self.config_file)
        except Exception as exc:
            LOG.warning("config reload failed, keeping current config path=%s error=%s", self.config_file, exc)
            return False
        self._signature = signature
        LOG.info("config reloaded path=%s", self.config_file)
        return True

    async def _watch_once(self) -> None:
        changed = asyncio.Event()
        handler = _ChangeSignal(asyncio.get_running_loop(), changed, self.config_file.name)
        observer = Observer()
        observer.schedule(handler, str(self.config_file.parent.resolve()), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                await asyncio.sleep(self._debounce_seconds)
                changed.clear()
                await self.check()
        finally:
            observer.stop()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run(self) -> None:
        """Watch until cancelled; a crashed observer is restarted after one second."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("config watcher failed (%s), restarting in 1s", exc)
                await asyncio.sleep(1.0)
