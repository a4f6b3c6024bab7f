"""
Lock pollers for JSON files that were still being written when detected.

Each locked file gets its own LockPoller running on its own thread. The
PollerRegistry owns those threads, enforces the poller limit against its
own active count, and lets the owner wait for or interrupt them.
"""

import itertools
import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Callable, Dict, Optional

from json_listener.errors import ResourceExhaustionError, UploadError
from json_listener.failures import FailureRecorder
from json_listener.locks import LockDetector, is_file_locked
from json_listener.models import PollerOutcome
from json_listener.sink import UploadSink


logger = logging.getLogger(__name__)


def upload_or_record(
    sink: UploadSink,
    recorder: FailureRecorder,
    path: Path,
    destination_path: Optional[str]
) -> bool:
    """
    Upload one file, recording it as failed if the upload doesn't succeed.

    Args:
        sink: Sink to upload through
        recorder: Where failures go
        path: JSON file to upload
        destination_path: Path in the sink

    Returns:
        True if the file was posted
    """
    try:
        sink.upload(path, destination_path)
    except UploadError as e:
        logger.critical(f"[FAILURE] Failed to post file {path} to database: {e}")
        recorder.record(path)
        return False

    logger.info(f"[SUCCESS] Successfully posted file {path} to database!")
    return True


class LockPoller:
    """
    Retries a locked file until it unlocks, then uploads it.

    States: polling -> uploaded | exhausted | interrupted. Every outcome
    other than uploaded records the file with the failure recorder, including
    running out of tries while the file is still locked.
    """

    def __init__(
        self,
        path: Path,
        sink: UploadSink,
        recorder: FailureRecorder,
        destination: Callable[[], Optional[str]],
        max_tries: int,
        interval_seconds: float,
        lock_detector: LockDetector = is_file_locked
    ):
        """
        Initialize a poller for one file.

        Args:
            path: The locked JSON file
            sink: Sink used once the file unlocks
            recorder: Failure recorder shared with the watch loop
            destination: Returns the destination path at upload time
            max_tries: Lock checks before giving up
            interval_seconds: Wait before each lock check
            lock_detector: Lock check
        """
        self.path = Path(path)
        self.sink = sink
        self.recorder = recorder
        self.destination = destination
        self.max_tries = max_tries
        self.interval_seconds = interval_seconds
        self.lock_detector = lock_detector

        self.attempts = 0
        self.outcome: Optional[PollerOutcome] = None
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Interrupt the poller at its next wait."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> PollerOutcome:
        """
        Poll until the file unlocks, tries run out, or the poller is cancelled.

        Returns:
            The terminal outcome (also stored on ``self.outcome``)
        """
        self.outcome = self._poll()
        return self.outcome

    def _poll(self) -> PollerOutcome:
        path = self.path

        for attempt in range(1, self.max_tries + 1):
            if self._cancel.wait(self.interval_seconds):
                logger.critical(
                    f"[FATAL ERROR] Poller interrupted while waiting on locked file: {path}"
                )
                self.recorder.record(path)
                return PollerOutcome.INTERRUPTED

            self.attempts = attempt
            try:
                locked = self.lock_detector(path)
            except Exception as e:
                logger.error(f"Lock check failed for {path}: {e}", exc_info=True)
                self.recorder.record(path)
                return PollerOutcome.EXHAUSTED

            if locked:
                logger.debug(f"File {path} still locked ({attempt}/{self.max_tries})")
                continue

            logger.info(f"File {path} is now unlocked. Attempting to POST...")
            try:
                uploaded = upload_or_record(self.sink, self.recorder, path, self.destination())
            except Exception as e:
                logger.error(f"Unexpected error uploading {path}: {e}", exc_info=True)
                self.recorder.record(path)
                return PollerOutcome.EXHAUSTED

            return PollerOutcome.UPLOADED if uploaded else PollerOutcome.EXHAUSTED

        logger.critical(
            f"[FAILURE] File {path} still locked after {self.max_tries} tries, giving up"
        )
        self.recorder.record(path)
        return PollerOutcome.EXHAUSTED


class PollerRegistry:
    """
    Bounded set of running lock pollers.

    The limit is checked against this registry only, never against the
    number of threads in the process.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._done = threading.Condition(self._lock)
        self._active: Dict[int, LockPoller] = {}
        self._threads: Dict[int, threading.Thread] = {}
        self._ids = itertools.count(1)
        self.outcomes: Counter = Counter()

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def spawn(self, poller: LockPoller, max_active: int) -> threading.Thread:
        """
        Start a poller on its own thread.

        Args:
            poller: Poller to run
            max_active: Limit of concurrently active pollers

        Returns:
            The started thread

        Raises:
            ResourceExhaustionError: If ``max_active`` pollers are already running
        """
        with self._lock:
            active = len(self._active)
            if active >= max_active:
                raise ResourceExhaustionError(
                    f"Cannot start poller for {poller.path}: "
                    f"{active} of {max_active} pollers already active",
                    active=active,
                    limit=max_active
                )

            poller_id = next(self._ids)
            thread = threading.Thread(
                target=self._run,
                args=(poller_id, poller),
                name=f"LockPoller-{poller_id}-{poller.path.name}",
                daemon=False  # Pending uploads finish before interpreter exit
            )
            self._active[poller_id] = poller
            self._threads[poller_id] = thread

        try:
            thread.start()
        except RuntimeError as e:
            with self._done:
                self._active.pop(poller_id, None)
                self._threads.pop(poller_id, None)
                self._done.notify_all()
            raise ResourceExhaustionError(
                f"Cannot start poller thread for {poller.path}: {e}",
                active=active,
                limit=max_active
            ) from e

        logger.info(f"Opened new thread to poll locked file: {poller.path}")
        return thread

    def _run(self, poller_id: int, poller: LockPoller) -> None:
        outcome = PollerOutcome.EXHAUSTED
        try:
            outcome = poller.run()
        except Exception as e:
            logger.error(f"Poller for {poller.path} crashed: {e}", exc_info=True)
            poller.recorder.record(poller.path)
        finally:
            with self._done:
                self._active.pop(poller_id, None)
                self._threads.pop(poller_id, None)
                self.outcomes[outcome] += 1
                self._done.notify_all()

    def cancel_all(self) -> int:
        """
        Interrupt every active poller.

        Returns:
            Number of pollers signalled
        """
        with self._lock:
            pollers = list(self._active.values())
        for poller in pollers:
            poller.cancel()
        return len(pollers)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no poller is active.

        Args:
            timeout: Seconds to wait (None waits forever)

        Returns:
            True if every poller finished
        """
        with self._done:
            return self._done.wait_for(lambda: not self._active, timeout=timeout)
