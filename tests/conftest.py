"""Test fixtures for json-listener tests."""

import json
import logging
import shutil
import tempfile
import threading
from pathlib import Path

import pytest

from json_listener.errors import ConnectionProviderError
from json_listener.failures import FailureRecorder
from json_listener.models import ListenerSettings
from json_listener.sink import UploadSink


class FakeConnection:
    """In-memory connection recording every post."""

    def __init__(self, fail_paths=None, established=True):
        self.posts = []
        self.fail_paths = set(fail_paths or [])
        self.established = established
        self._lock = threading.Lock()

    def is_established(self):
        return self.established

    def post(self, destination_path, data):
        if destination_path in self.fail_paths:
            raise ConnectionProviderError(f"refused post to {destination_path}", status_code=500)
        with self._lock:
            self.posts.append((destination_path, data))
        return {"name": f"-key{len(self.posts)}"}

    def posted_data(self):
        with self._lock:
            return [data for _, data in self.posts]


class ScriptedLockDetector:
    """
    Lock detector whose answers are set by the test.

    A path listed in ``locked`` stays locked until ``unlock_after`` checks of
    it have been made (or forever if that is None).
    """

    def __init__(self, locked=(), unlock_after=None):
        self.locked = {Path(p).name for p in locked}
        self.unlock_after = unlock_after
        self.checks = {}
        self._lock = threading.Lock()

    def __call__(self, path):
        name = Path(path).name
        with self._lock:
            self.checks[name] = self.checks.get(name, 0) + 1
            count = self.checks[name]
        if name not in self.locked:
            return False
        if self.unlock_after is None:
            return True
        return count <= self.unlock_after


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def watch_dir(temp_dir):
    """Directory being watched."""
    path = temp_dir / "data"
    path.mkdir()
    return path


@pytest.fixture
def log_dir(temp_dir):
    """Directory for the operational and failure logs."""
    path = temp_dir / "logs"
    path.mkdir()
    return path


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def sink(connection):
    return UploadSink(connection)


@pytest.fixture
def recorder(log_dir):
    """Failure recorder writing into the log directory."""
    failure_recorder = FailureRecorder(log_dir)
    yield failure_recorder
    failure_recorder.close()


@pytest.fixture
def fast_settings():
    """Settings with short intervals so loops turn over quickly."""
    return ListenerSettings(
        poll_interval_ms=20,
        locked_file_poll_interval_ms=10,
        max_locked_file_tries=5,
        shutdown_timeout_ms=2000,
    )


@pytest.fixture
def write_json():
    """Write a JSON document to a path and return the path."""
    def _write(path, data):
        path = Path(path)
        path.write_text(json.dumps(data), encoding="utf-8")
        return path
    return _write


@pytest.fixture(autouse=True)
def detach_listener_log_handlers():
    """Drop file handlers a test left on the package logger."""
    yield
    package_logger = logging.getLogger("json_listener")
    for handler in list(package_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            package_logger.removeHandler(handler)
            handler.close()
