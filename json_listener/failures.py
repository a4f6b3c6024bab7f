"""
Failure recorder.

Every file that could not be delivered is appended to a plain text log
(one absolute path per line) and kept in memory, sorted by path, so an
operator can inspect it. Nothing here retries or replays a failed file.
"""

import bisect
import logging
import threading
from pathlib import Path
from typing import List, Union


logger = logging.getLogger(__name__)

FAILED_FILES_LOG_NAME = "json-listener-failed-files.txt"


class FailureRecorder:
    """
    Append-only record of failed uploads.

    Safe to call from the watch loop and any number of lock pollers at once.
    A file that fails more than once is recorded once per failure.
    """

    def __init__(self, log_dir: Union[str, Path]):
        """
        Open (or create) the failure log in ``log_dir``.

        Args:
            log_dir: Directory holding json-listener-failed-files.txt
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_dir / FAILED_FILES_LOG_NAME

        self._lock = threading.Lock()
        self._failed: List[str] = []
        # Appending, never truncating: earlier runs stay in the trail
        self._handle = open(self.log_file, 'a', encoding='utf-8')

    def record(self, path: Union[str, Path]) -> None:
        """
        Record one failed upload.

        Args:
            path: File that failed to upload (stored as an absolute path)
        """
        entry = str(Path(path).absolute())
        with self._lock:
            if self._handle.closed:
                logger.error(f"Failure log closed, could not persist failed file: {entry}")
            else:
                self._handle.write(entry + "\n")
                self._handle.flush()
            bisect.insort(self._failed, entry)

    def failed_files(self) -> List[str]:
        """Snapshot of recorded failures, ordered by path."""
        with self._lock:
            return list(self._failed)

    def count(self, path: Union[str, Path]) -> int:
        """How many times ``path`` has been recorded."""
        entry = str(Path(path).absolute())
        with self._lock:
            lo = bisect.bisect_left(self._failed, entry)
            hi = bisect.bisect_right(self._failed, entry)
            return hi - lo

    def close(self) -> None:
        with self._lock:
            if not self._handle.closed:
                self._handle.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._failed)

    def __contains__(self, path) -> bool:
        return self.count(path) > 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def read_failure_log(log_file: Union[str, Path]) -> List[str]:
    """
    Read the persisted failure trail.

    Args:
        log_file: Failure log file, or the log directory containing it

    Returns:
        Entries in the order they were written (empty if the log is missing)
    """
    log_file = Path(log_file)
    if log_file.is_dir():
        log_file = log_file / FAILED_FILES_LOG_NAME

    if not log_file.exists():
        return []

    with open(log_file, 'r', encoding='utf-8') as f:
        return [line.rstrip("\n") for line in f if line.strip()]
