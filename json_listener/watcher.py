"""
Watchdog-based watch loop for the listener directory.

The watchdog observer thread only buffers creation events. The watch loop
wakes every poll interval, drains the buffer in order, and for each new
.json file either uploads it straight away or hands it to a lock poller.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileCreatedEvent, FileMovedEvent

from json_listener.errors import ResourceExhaustionError, WatchRegistrationError
from json_listener.failures import FailureRecorder
from json_listener.locks import LockDetector, is_file_locked
from json_listener.models import ExitReason, FileEvent, ListenerSettings
from json_listener.poller import LockPoller, PollerRegistry, upload_or_record
from json_listener.sink import UploadSink


logger = logging.getLogger(__name__)

JSON_SUFFIX = ".json"


def is_json_entry(path: Path) -> bool:
    """Case-sensitive check of the file name's suffix."""
    return path.name.endswith(JSON_SUFFIX)


class CreationEventHandler(FileSystemEventHandler):
    """
    Buffers file creation events from the observer thread.

    The buffer is bounded; events arriving while it is full are dropped and
    counted as an overflow, reported on the next drain.
    """

    def __init__(self, watch_dir: Path, max_pending: int = 10000):
        """
        Initialize the handler.

        Args:
            watch_dir: Directory being watched (only its direct entries count)
            max_pending: Capacity of the event buffer
        """
        super().__init__()

        self.watch_dir = Path(watch_dir)
        self._events: queue.Queue = queue.Queue(maxsize=max_pending)
        self._overflow_lock = threading.Lock()
        self._overflow = 0

    def on_created(self, event: FileCreatedEvent) -> None:
        """
        Handle file creation event.

        Args:
            event: File created event
        """
        if event.is_directory:
            return

        self._buffer(event.src_path, "created")

    def on_moved(self, event: FileMovedEvent) -> None:
        """
        A file renamed or moved into the directory is a new entry too.

        Args:
            event: File moved event
        """
        if event.is_directory:
            return

        dest = Path(os.fsdecode(event.dest_path))
        if dest.parent != self.watch_dir:
            return

        self._buffer(event.dest_path, "moved")

    def _buffer(self, raw_path, kind: str) -> None:
        path = Path(os.fsdecode(raw_path))
        if not path.is_absolute():
            path = self.watch_dir / path

        try:
            self._events.put_nowait(FileEvent(path=path.absolute(), kind=kind))
        except queue.Full:
            with self._overflow_lock:
                self._overflow += 1

    def drain(self) -> Tuple[List[FileEvent], int]:
        """
        Take every buffered event.

        Returns:
            (events in arrival order, number of events dropped since the last drain)
        """
        with self._overflow_lock:
            dropped = self._overflow
            self._overflow = 0

        events = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                break

        return events, dropped

    def pending(self) -> int:
        return self._events.qsize()


class WatchLoop:
    """
    Sleep, drain, classify: the listener's main loop.

    Per-file failures are recorded and the loop carries on. Running out of
    poller limit or losing the directory ends the loop, and run() reports
    why through an ExitReason.
    """

    def __init__(
        self,
        watch_dir: Path,
        sink: UploadSink,
        recorder: FailureRecorder,
        registry: PollerRegistry,
        settings: ListenerSettings,
        destination: Callable[[], Optional[str]],
        lock_detector: LockDetector = is_file_locked,
        observer_factory: Callable[[], Observer] = Observer
    ):
        """
        Initialize the watch loop.

        Args:
            watch_dir: Directory to watch
            sink: Upload sink for unlocked files
            recorder: Failure recorder
            registry: Registry that owns lock pollers
            settings: Live listener settings (read every cycle)
            destination: Returns the current destination path
            lock_detector: Lock check
            observer_factory: Creates the watchdog observer
        """
        self.watch_dir = Path(watch_dir).absolute()
        self.sink = sink
        self.recorder = recorder
        self.registry = registry
        self.settings = settings
        self.destination = destination
        self.lock_detector = lock_detector
        self.observer_factory = observer_factory

        self.handler = CreationEventHandler(self.watch_dir, settings.max_pending_events)
        self._observer: Optional[Observer] = None

        self.listening = False
        self.idle = True
        self.fatal_error: Optional[Exception] = None
        self._stop_requested = False

    def register(self) -> None:
        """
        Start watching the directory for new entries.

        Raises:
            WatchRegistrationError: If the directory can't be watched
        """
        path = self.watch_dir
        if not path.is_dir():
            raise WatchRegistrationError(f"Watch directory does not exist: {path}", directory=path)
        if not os.access(path, os.R_OK | os.X_OK):
            raise WatchRegistrationError(f"Watch directory is not readable: {path}", directory=path)

        observer = self.observer_factory()
        try:
            observer.schedule(event_handler=self.handler, path=str(path), recursive=False)
            observer.start()
        except OSError as e:
            raise WatchRegistrationError(f"Failed to watch {path}: {e}", directory=path) from e

        self._observer = observer
        logger.info(f"Watching for new JSON files in: {path}")

    def stop(self) -> None:
        """Ask the loop to exit before its next drain."""
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def run(self) -> ExitReason:
        """
        Run until stopped or a fatal condition.

        Must be called after register(). Blocks the calling thread.

        Returns:
            Why the loop ended
        """
        if self._observer is None:
            raise WatchRegistrationError("Watch loop started before registration", directory=self.watch_dir)

        self.listening = True
        reason = ExitReason.STOPPED
        try:
            while True:
                try:
                    time.sleep(self.settings.poll_interval_seconds)
                except KeyboardInterrupt:
                    logger.critical("[FATAL ERROR] Interrupted while sleeping the main polling loop!")
                    reason = ExitReason.INTERRUPTED
                    break

                if self._stop_requested:
                    logger.info("Stop requested, leaving main poll loop")
                    break

                try:
                    self._drain()
                except ResourceExhaustionError as e:
                    logger.critical(f"[FATAL ERROR] Cannot open new poller - {e}")
                    self.fatal_error = e
                    reason = ExitReason.RESOURCE_EXHAUSTED
                    break
                finally:
                    self.idle = True

                if not self._rearm():
                    logger.critical(
                        "[FATAL ERROR] Directory inaccessible, watch invalidated, exiting main poll loop!"
                    )
                    self.fatal_error = WatchRegistrationError(
                        f"Watch on {self.watch_dir} invalidated", directory=self.watch_dir
                    )
                    reason = ExitReason.DIRECTORY_INVALIDATED
                    break
        finally:
            self.listening = False
            self.idle = True
            self._shutdown_observer()

        logger.info(f"Watch loop exited: {reason.value}")
        return reason

    def _drain(self) -> None:
        events, dropped = self.handler.drain()

        if dropped:
            logger.warning(f"Event buffer overflowed, {dropped} file event(s) were dropped")

        for event in events:
            self.idle = False
            try:
                self._handle_event(event)
            except ResourceExhaustionError:
                raise
            except Exception as e:
                logger.error(f"Error handling new file {event.path}: {e}", exc_info=True)

    def _handle_event(self, event: FileEvent) -> None:
        """
        Classify one new entry and act on it.

        Raises:
            ResourceExhaustionError: If the file is locked and the poller limit is spent
        """
        child = event.path
        logger.info(f"Found new file: {child}")

        if not is_json_entry(child):
            logger.warning(f"New file: {child} is not a JSON file, aborting attempt to upload.")
            return

        logger.info(f"New file: {child} resolved to be a JSON file.")

        # Non-regular entries such as FIFOs can block on open
        if child.exists() and not child.is_file():
            logger.critical(f"[FAILURE] New file: {child} is not a regular file, cannot post it.")
            self.recorder.record(child)
            return

        try:
            locked = self.lock_detector(child)
        except Exception as e:
            logger.error(f"Lock check failed for {child}: {e}", exc_info=True)
            self.recorder.record(child)
            return

        if locked:
            logger.warning(f"New file: {child} is locked!")
            self._spawn_poller(child)
            return

        logger.info(f"New file: {child} is unlocked, attempting to POST...")
        try:
            upload_or_record(self.sink, self.recorder, child, self.destination())
        except Exception as e:
            logger.error(f"Unexpected error uploading {child}: {e}", exc_info=True)
            self.recorder.record(child)

    def _spawn_poller(self, path: Path) -> None:
        poller = LockPoller(
            path=path,
            sink=self.sink,
            recorder=self.recorder,
            destination=self.destination,
            max_tries=self.settings.max_locked_file_tries,
            interval_seconds=self.settings.locked_file_poll_interval_seconds,
            lock_detector=self.lock_detector
        )
        self.registry.spawn(poller, self.settings.max_threads)

    def _rearm(self) -> bool:
        """True if the watch is still valid for another cycle."""
        if self._observer is None or not self._observer.is_alive():
            return False
        return self.watch_dir.is_dir() and os.access(self.watch_dir, os.R_OK | os.X_OK)

    def _shutdown_observer(self) -> None:
        if self._observer is None:
            return

        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)
        except Exception as e:
            logger.error(f"Error stopping observer for {self.watch_dir}: {e}", exc_info=True)
        finally:
            self._observer = None
