import asyncio
import tempfile
import unittest
from pathlib import Path

from watchdog.events import DirModifiedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from streamkoppler.config_reload import ConfigWatcher, event_touches_file


class EventMatchTests(unittest.TestCase):
    def test_matches_same_filename_for_absolute_path(self) -> None:
        self.assertTrue(event_touches_file(FileModifiedEvent("/tmp/work/config.yaml"), "config.yaml"))

    def test_matches_same_filename_for_relative_path(self) -> None:
        self.assertTrue(event_touches_file(FileCreatedEvent("config.yaml"), "config.yaml"))

    def test_matches_move_destination(self) -> None:
        event = FileMovedEvent("/tmp/work/.config.yaml.swp", "/tmp/work/config.yaml")
        self.assertTrue(event_touches_file(event, "config.yaml"))

    def test_does_not_match_different_filename(self) -> None:
        self.assertFalse(event_touches_file(FileModifiedEvent("/tmp/work/other.yaml"), "config.yaml"))

    def test_does_not_match_directory_events(self) -> None:
        self.assertFalse(event_touches_file(DirModifiedEvent("/tmp/work/config.yaml"), "config.yaml"))


class ConfigWatcherCheckTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "config.yaml"
        self.path.write_text("providers: []\n", encoding="utf-8")
        self.reloaded: list[Path] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def _record(self, path: Path) -> None:
        self.reloaded.append(path)

    def test_unchanged_file_is_not_reloaded(self) -> None:
        watcher = ConfigWatcher(self.path, self._record)
        self.assertFalse(asyncio.run(watcher.check()))
        self.assertEqual(self.reloaded, [])

    def test_changed_file_is_reloaded_once(self) -> None:
        watcher = ConfigWatcher(self.path, self._record)
        self.path.write_text("providers: []\nretry:\n  max_attempts: 2\n", encoding="utf-8")
        self.assertTrue(asyncio.run(watcher.check()))
        self.assertFalse(asyncio.run(watcher.check()))
        self.assertEqual(self.reloaded, [self.path])

    def test_failed_reload_keeps_previous_and_retries(self) -> None:
        attempts: list[Path] = []

        async def broken(path: Path) -> None:
            attempts.append(path)
            raise ValueError("invalid config")

        watcher = ConfigWatcher(self.path, broken)
        self.path.write_text("providers: [oops\n", encoding="utf-8")
        self.assertFalse(asyncio.run(watcher.check()))
        self.assertFalse(asyncio.run(watcher.check()))
        self.assertEqual(len(attempts), 2)

    def test_missing_file_is_ignored_unless_forced(self) -> None:
        watcher = ConfigWatcher(self.path, self._record)
        self.path.unlink()
        self.assertFalse(asyncio.run(watcher.check()))
        self.assertTrue(asyncio.run(watcher.check(force=True)))
        self.assertEqual(self.reloaded, [self.path])


if __name__ == "__main__":
    unittest.main()
