"""
Tests for json_listener.watcher.

Covers the event buffer (CreationEventHandler) and the WatchLoop with a
mocked watchdog observer, so no real filesystem events are involved.
"""

import os
import shutil
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileMovedEvent

from json_listener.errors import WatchRegistrationError
from json_listener.models import ExitReason, FileEvent, ListenerSettings
from json_listener.poller import PollerRegistry
from json_listener.watcher import CreationEventHandler, WatchLoop, is_json_entry

from conftest import ScriptedLockDetector


class TestIsJsonEntry:
    """Tests for the JSON name check."""

    @pytest.mark.parametrize("name,expected", [
        ("a.json", True),
        ("archive.tar.json", True),
        (".json", True),
        ("b.txt", False),
        ("a.JSON", False),
        ("a.json.tmp", False),
        ("json", False),
    ])
    def test_suffix_is_case_sensitive(self, name, expected):
        assert is_json_entry(Path("/data") / name) is expected


class TestCreationEventHandler:
    """Tests for CreationEventHandler."""

    def test_created_events_drained_in_order(self, watch_dir):
        handler = CreationEventHandler(watch_dir)
        for name in ["a.json", "b.txt", "c.json"]:
            handler.on_created(FileCreatedEvent(str(watch_dir / name)))

        events, dropped = handler.drain()

        assert [e.path.name for e in events] == ["a.json", "b.txt", "c.json"]
        assert all(e.kind == "created" for e in events)
        assert dropped == 0
        assert handler.pending() == 0

    def test_directories_ignored(self, watch_dir):
        handler = CreationEventHandler(watch_dir)
        handler.on_created(DirCreatedEvent(str(watch_dir / "sub.json")))

        assert handler.drain() == ([], 0)

    def test_move_into_directory_counts(self, watch_dir, temp_dir):
        handler = CreationEventHandler(watch_dir)
        handler.on_moved(FileMovedEvent(str(watch_dir / "a.json.part"), str(watch_dir / "a.json")))
        handler.on_moved(FileMovedEvent(str(watch_dir / "b.json"), str(temp_dir / "b.json")))

        events, _ = handler.drain()

        assert [(e.path.name, e.kind) for e in events] == [("a.json", "moved")]

    def test_bytes_paths_decoded(self, watch_dir):
        handler = CreationEventHandler(watch_dir)
        handler.on_created(FileCreatedEvent(bytes(watch_dir / "a.json")))

        events, _ = handler.drain()

        assert events[0].path == watch_dir / "a.json"

    def test_overflow_counted_and_reset(self, watch_dir):
        """Test a full buffer drops events and reports the count once."""
        handler = CreationEventHandler(watch_dir, max_pending=2)
        for i in range(5):
            handler.on_created(FileCreatedEvent(str(watch_dir / f"{i}.json")))

        events, dropped = handler.drain()
        assert [e.path.name for e in events] == ["0.json", "1.json"]
        assert dropped == 3

        assert handler.drain() == ([], 0)


class TestWatchLoop:
    """Tests for WatchLoop with a mocked observer."""

    @pytest.fixture
    def observer(self):
        observer = MagicMock()
        observer.is_alive.return_value = True
        return observer

    @pytest.fixture
    def registry(self):
        registry = PollerRegistry()
        yield registry
        registry.cancel_all()
        registry.wait(timeout=5)

    @pytest.fixture
    def make_loop(self, watch_dir, sink, recorder, registry, fast_settings, observer):
        def _make(lock_detector=None, settings=None, destination="items"):
            return WatchLoop(
                watch_dir=watch_dir,
                sink=sink,
                recorder=recorder,
                registry=registry,
                settings=settings or fast_settings,
                destination=lambda: destination,
                lock_detector=lock_detector or ScriptedLockDetector(),
                observer_factory=lambda: observer
            )
        return _make

    def test_register_schedules_non_recursive(self, make_loop, observer, watch_dir):
        loop = make_loop()
        loop.register()

        observer.schedule.assert_called_once_with(
            event_handler=loop.handler, path=str(watch_dir.absolute()), recursive=False
        )
        observer.start.assert_called_once()

    def test_register_missing_directory(self, make_loop, watch_dir):
        loop = make_loop()
        shutil.rmtree(watch_dir)

        with pytest.raises(WatchRegistrationError, match="does not exist") as exc_info:
            loop.register()
        assert exc_info.value.directory == str(watch_dir.absolute())
        assert loop.listening is False

    def test_register_observer_failure(self, make_loop, observer):
        observer.start.side_effect = OSError("inotify watch limit reached")
        loop = make_loop()

        with pytest.raises(WatchRegistrationError, match="inotify watch limit reached"):
            loop.register()

    def test_run_requires_registration(self, make_loop):
        with pytest.raises(WatchRegistrationError):
            make_loop().run()

    def test_stop_before_next_drain(self, make_loop, watch_dir, write_json, connection):
        """Test events buffered at stop time are not processed."""
        loop = make_loop()
        loop.register()
        path = write_json(watch_dir / "a.json", {"k": 1})
        loop.handler.on_created(FileCreatedEvent(str(path)))
        loop.stop()

        reason = loop.run()

        assert reason == ExitReason.STOPPED
        assert connection.posts == []
        assert loop.listening is False
        assert loop.stop_requested

    def test_handle_unlocked_json(self, make_loop, watch_dir, write_json, connection, recorder):
        loop = make_loop()
        path = write_json(watch_dir / "a.json", {"k": 1})

        loop._handle_event(FileEvent(path=path))

        assert connection.posts == [("items", {"k": 1})]
        assert len(recorder) == 0

    def test_handle_non_json_ignored(self, make_loop, watch_dir, connection, recorder, registry):
        loop = make_loop()
        path = watch_dir / "b.txt"
        path.write_text("hello")

        loop._handle_event(FileEvent(path=path))

        assert connection.posts == []
        assert len(recorder) == 0
        assert registry.active_count() == 0

    def test_handle_malformed_json_recorded(self, make_loop, watch_dir, connection, recorder):
        loop = make_loop()
        path = watch_dir / "bad.json"
        path.write_text("{")

        loop._handle_event(FileEvent(path=path))

        assert connection.posts == []
        assert recorder.count(path) == 1

    def test_handle_locked_spawns_poller(self, make_loop, watch_dir, write_json, connection, registry):
        detector = ScriptedLockDetector(locked=["c.json"], unlock_after=2)
        loop = make_loop(lock_detector=detector)
        path = write_json(watch_dir / "c.json", {"k": "c"})

        loop._handle_event(FileEvent(path=path))

        assert registry.wait(timeout=5)
        assert connection.posts == [("items", {"k": "c"})]

    def test_lock_check_error_recorded(self, make_loop, watch_dir, write_json, recorder):
        loop = make_loop(lock_detector=MagicMock(side_effect=OSError("io")))
        path = write_json(watch_dir / "a.json", {})

        loop._handle_event(FileEvent(path=path))

        assert recorder.count(path) == 1

    @pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="named pipes need os.mkfifo")
    def test_fifo_recorded_without_lock_check(self, make_loop, watch_dir, connection, recorder):
        """Test a named pipe called .json neither blocks the loop nor reaches the lock check."""
        detector = MagicMock(return_value=False)
        loop = make_loop(lock_detector=detector)
        fifo = watch_dir / "x.json"
        os.mkfifo(fifo)

        t = threading.Thread(target=loop._handle_event, args=(FileEvent(path=fifo),), daemon=True)
        t.start()
        t.join(timeout=2)

        assert not t.is_alive()
        detector.assert_not_called()
        assert connection.posts == []
        assert recorder.count(fifo) == 1

    def test_drain_processes_in_order(self, make_loop, watch_dir, write_json, connection):
        loop = make_loop()
        for name in ["1.json", "2.json", "3.json"]:
            path = write_json(watch_dir / name, {"n": name})
            loop.handler.on_created(FileCreatedEvent(str(path)))

        loop._drain()

        assert [d["n"] for d in connection.posted_data()] == ["1.json", "2.json", "3.json"]

    def test_drain_survives_handler_errors(self, make_loop, watch_dir, write_json, connection):
        loop = make_loop()
        for name in ["a.json", "b.json"]:
            loop.handler.on_created(FileCreatedEvent(str(write_json(watch_dir / name, {"n": name}))))

        original = loop._handle_event
        calls = []

        def flaky(event):
            calls.append(event.path.name)
            if event.path.name == "a.json":
                raise RuntimeError("unexpected")
            original(event)

        loop._handle_event = flaky
        loop._drain()

        assert calls == ["a.json", "b.json"]
        assert connection.posted_data() == [{"n": "b.json"}]

    def test_resource_exhaustion_ends_loop(self, make_loop, watch_dir, write_json, registry, observer):
        """Test a locked file beyond the poller limit is fatal."""
        settings = ListenerSettings(
            max_threads=3,
            poll_interval_ms=10,
            locked_file_poll_interval_ms=10000,
            max_locked_file_tries=1000
        )
        names = ["a.json", "b.json", "c.json", "d.json"]
        loop = make_loop(lock_detector=ScriptedLockDetector(locked=names), settings=settings)
        loop.register()
        for name in names:
            loop.handler.on_created(FileCreatedEvent(str(write_json(watch_dir / name, {}))))

        reason = loop.run()

        assert reason == ExitReason.RESOURCE_EXHAUSTED
        assert loop.fatal_error is not None
        assert registry.active_count() == 3
        observer.stop.assert_called_once()

    def test_directory_removed_invalidates_watch(self, make_loop, watch_dir):
        loop = make_loop()
        loop.register()
        shutil.rmtree(watch_dir)

        reason = loop.run()

        assert reason == ExitReason.DIRECTORY_INVALIDATED
        assert isinstance(loop.fatal_error, WatchRegistrationError)
        assert loop.listening is False

    def test_dead_observer_invalidates_watch(self, make_loop, observer):
        loop = make_loop()
        loop.register()
        observer.is_alive.return_value = False

        assert loop.run() == ExitReason.DIRECTORY_INVALIDATED

    def test_interrupted_sleep(self, make_loop):
        loop = make_loop()
        loop.register()

        with patch("json_listener.watcher.time.sleep", side_effect=KeyboardInterrupt):
            reason = loop.run()

        assert reason == ExitReason.INTERRUPTED
        assert loop.listening is False

    def test_listening_while_running(self, make_loop):
        loop = make_loop()
        loop.register()
        result = {}

        thread = threading.Thread(target=lambda: result.setdefault("reason", loop.run()))
        thread.start()
        try:
            for _ in range(200):
                if loop.listening:
                    break
                threading.Event().wait(0.01)
            assert loop.listening is True
        finally:
            loop.stop()
            thread.join(timeout=5)

        assert result["reason"] == ExitReason.STOPPED
        assert loop.listening is False
