"""
JsonListener: uploads every new JSON file in a directory to a remote sink.

The listener owns the configuration, the lifecycle flags and the pieces of
the pipeline (sink, failure recorder, poller registry, watch loop). start()
blocks for as long as the listener runs, so callers that need to keep going
run it on their own thread.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError
from watchdog.observers import Observer

from json_listener.config import format_validation_error
from json_listener.errors import (
    ConfigurationError,
    ListenerStateError,
    WatchRegistrationError,
)
from json_listener.failures import FailureRecorder
from json_listener.locks import LockDetector, is_file_locked
from json_listener.models import (
    ExitReason,
    ListenerConfig,
    ListenerSettings,
    ListenerStatus,
    ShutdownMode,
)
from json_listener.poller import PollerRegistry
from json_listener.sink import Connection, FirebaseConnection, UploadSink, parse_json_file
from json_listener.watcher import WatchLoop


logger = logging.getLogger(__name__)

LOG_FILE_NAME = "json-listener-log.log"
PACKAGE_LOGGER_NAME = "json_listener"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(message)s"


class JsonListener:
    """
    Listens for new .json files in a directory and uploads them.

    Lifecycle: constructed -> listening (inside start()) -> stopped. Once a
    listener has stopped it cannot listen again; create a new one instead.
    """

    def __init__(
        self,
        connection: Connection,
        watch_dir: Union[str, Path],
        destination_path: Optional[str],
        log_dir: Union[str, Path],
        settings: Optional[ListenerSettings] = None,
        lock_detector: LockDetector = is_file_locked,
        parser: Callable[[Path], Any] = parse_json_file,
        observer_factory: Callable[[], Observer] = Observer
    ):
        """
        Initialize the listener.

        Args:
            connection: Connection used to post files to the sink
            watch_dir: Directory to watch for new JSON files
            destination_path: Path in the sink that files are posted to
            log_dir: Directory for json-listener-log.log and the failure log
            settings: Tunables (defaults if None; copied, not shared)
            lock_detector: Check telling whether a file is still being written
            parser: Turns a JSON file into a mapping
            observer_factory: Creates the watchdog observer

        Raises:
            ConfigurationError: If the connection is missing or a directory is unusable
        """
        if connection is None:
            raise ConfigurationError("Provided connection is None.")

        watch_path = Path(watch_dir)
        if not watch_path.is_dir():
            raise ConfigurationError(f"Watch directory does not exist or is not a directory: {watch_path}")

        log_path = Path(log_dir)
        try:
            log_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create log directory {log_path}: {e}") from e

        self.connection = connection
        self.watch_dir = watch_path.resolve()
        self.log_dir = log_path.resolve()
        self.settings = settings.model_copy() if settings is not None else ListenerSettings()
        self.lock_detector = lock_detector
        self.observer_factory = observer_factory

        self._destination_path = destination_path
        self._destination_lock = threading.Lock()

        self.sink = UploadSink(connection, parser=parser)
        self.failure_recorder = FailureRecorder(self.log_dir)
        self.registry = PollerRegistry()

        self._log_handler = self._attach_log_file()
        self._handler_lock = threading.Lock()

        self._loop: Optional[WatchLoop] = None
        self._started = False
        self._start_thread: Optional[threading.Thread] = None
        self._stop_requested = False
        self._finished = threading.Event()

        self.exit_reason: Optional[ExitReason] = None
        self.fatal_error: Optional[Exception] = None

    @classmethod
    def from_config(
        cls,
        config: ListenerConfig,
        connection: Optional[Connection] = None,
        auth_token: Optional[str] = None,
        **kwargs
    ) -> "JsonListener":
        """
        Build a listener from a persisted configuration.

        Args:
            config: Listener configuration
            connection: Connection to use (a FirebaseConnection is built if None)
            auth_token: Firebase auth token for the built connection

        Raises:
            ConfigurationError: If the configuration is incomplete
        """
        if not config.is_runnable():
            raise ConfigurationError("Configuration needs both watch_dir and log_dir")

        if connection is None:
            if not config.database_url:
                raise ConfigurationError("No database_url configured and no connection given")
            connection = FirebaseConnection(config.database_url, auth_token=auth_token)

        return cls(
            connection=connection,
            watch_dir=config.watch_dir,
            destination_path=config.destination_path,
            log_dir=config.log_dir,
            settings=config.settings,
            **kwargs
        )

    def _attach_log_file(self) -> logging.Handler:
        """Send this package's log records to <log_dir>/json-listener-log.log."""
        handler = logging.FileHandler(self.log_dir / LOG_FILE_NAME, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

        package_logger = logging.getLogger(PACKAGE_LOGGER_NAME)
        if package_logger.level == logging.NOTSET:
            package_logger.setLevel(logging.INFO)
        package_logger.addHandler(handler)
        return handler

    # Lifecycle

    def start(self) -> ExitReason:
        """
        Watch the directory until stop() or a fatal condition.

        Blocks the calling thread for the listener's whole lifetime.

        Returns:
            Why listening ended. For fatal reasons the error is on ``fatal_error``.

        Raises:
            WatchRegistrationError: If the directory can't be watched (never listening)
            ListenerStateError: If this listener was already started
        """
        if self._started:
            raise ListenerStateError("Listener already started; create a new JsonListener to listen again")
        self._started = True
        self._start_thread = threading.current_thread()

        loop = WatchLoop(
            watch_dir=self.watch_dir,
            sink=self.sink,
            recorder=self.failure_recorder,
            registry=self.registry,
            settings=self.settings,
            destination=lambda: self.destination_path,
            lock_detector=self.lock_detector,
            observer_factory=self.observer_factory
        )
        self._loop = loop

        try:
            try:
                loop.register()
            except WatchRegistrationError as e:
                logger.critical(f"[FATAL ERROR] Failed to register watch on {self.watch_dir}: {e}")
                self.fatal_error = e
                raise

            if self._stop_requested:
                loop.stop()

            self.exit_reason = loop.run()
            self.fatal_error = loop.fatal_error
        finally:
            self._finished.set()
            self._detach_log_file_when_idle()

        return self.exit_reason

    def stop(self) -> bool:
        """
        Ask the listener to stop listening.

        Lock pollers already running are left alone. In wait shutdown mode
        this also waits, up to shutdown_timeout_ms, for the watch loop to exit
        and the pollers to finish.

        Returns:
            True if no poller is active when this returns
        """
        self.request_stop()

        if self.settings.shutdown_mode == ShutdownMode.WAIT:
            deadline = time.monotonic() + self.settings.shutdown_timeout_seconds
            # On the start() thread (e.g. from a signal handler) the loop can't exit until we return
            if self._started and threading.current_thread() is not self._start_thread:
                self._finished.wait(self.settings.shutdown_timeout_seconds)
            if not self.registry.wait(max(0.0, deadline - time.monotonic())):
                logger.warning(
                    f"{self.registry.active_count()} lock poller(s) still running after "
                    f"{self.settings.shutdown_timeout_ms} ms"
                )

        return self.registry.active_count() == 0

    def request_stop(self) -> None:
        """
        Ask the watch loop to exit before its next drain, without waiting.

        Safe to call from a signal handler running on the thread inside start().
        """
        self._stop_requested = True
        if self._loop is not None:
            self._loop.stop()

    def wait_for_pollers(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every running lock poller to finish.

        Args:
            timeout: Seconds to wait (None waits forever)

        Returns:
            True if all pollers finished
        """
        return self.registry.wait(timeout)

    def cancel_pollers(self) -> int:
        """
        Interrupt every running lock poller; each records its file as failed.

        Returns:
            Number of pollers signalled
        """
        count = self.registry.cancel_all()
        if count:
            logger.warning(f"Interrupting {count} lock poller(s)")
        return count

    def close(self) -> None:
        """
        Close the failure log and detach the log file handler.

        Pollers still running are interrupted first, and given up to
        shutdown_timeout_ms to record their files in the failure log.
        """
        active = self.registry.active_count()
        if active:
            logger.warning(f"Closing listener with {active} lock poller(s) still running")
            self.cancel_pollers()
            if not self.registry.wait(self.settings.shutdown_timeout_seconds):
                logger.error(
                    f"{self.registry.active_count()} lock poller(s) did not finish; "
                    f"their failures will not reach the failure log"
                )

        self.failure_recorder.close()
        self._detach_log_file()

    def _detach_log_file(self) -> None:
        with self._handler_lock:
            handler, self._log_handler = self._log_handler, None
        if handler is not None:
            logging.getLogger(PACKAGE_LOGGER_NAME).removeHandler(handler)
            handler.close()

    def _detach_log_file_when_idle(self) -> None:
        """Drop the log file handler once the loop and every poller are done."""
        if self.registry.active_count() == 0:
            self._detach_log_file()
            return

        def detach_after_pollers():
            self.registry.wait()
            self._detach_log_file()

        threading.Thread(
            target=detach_after_pollers,
            name="JsonListener-log-detach",
            daemon=True
        ).start()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # State

    @property
    def listening(self) -> bool:
        return self._loop is not None and self._loop.listening

    @property
    def idle(self) -> bool:
        return self._loop is None or self._loop.idle

    @property
    def active_pollers(self) -> int:
        return self.registry.active_count()

    def status(self) -> ListenerStatus:
        """Snapshot of the listener's state."""
        return ListenerStatus(
            listening=self.listening,
            idle=self.idle,
            watch_dir=str(self.watch_dir),
            destination_path=self.destination_path or "",
            active_pollers=self.active_pollers,
            failed_count=len(self.failure_recorder),
            exit_reason=self.exit_reason
        )

    # Destination (may change while listening)

    @property
    def destination_path(self) -> Optional[str]:
        with self._destination_lock:
            return self._destination_path

    @destination_path.setter
    def destination_path(self, value: Optional[str]) -> None:
        with self._destination_lock:
            self._destination_path = value
        logger.info(f"Destination path set to: {value!r}")

    # Validated tunables

    def _set(self, key: str, value: int) -> None:
        try:
            setattr(self.settings, key, value)
        except ValidationError as e:
            raise ConfigurationError(format_validation_error(e)) from e

    @property
    def max_threads(self) -> int:
        return self.settings.max_threads

    @max_threads.setter
    def max_threads(self, value: int) -> None:
        self._set("max_threads", value)

    @property
    def max_locked_file_tries(self) -> int:
        return self.settings.max_locked_file_tries

    @max_locked_file_tries.setter
    def max_locked_file_tries(self, value: int) -> None:
        self._set("max_locked_file_tries", value)

    @property
    def poll_interval_ms(self) -> int:
        return self.settings.poll_interval_ms

    @poll_interval_ms.setter
    def poll_interval_ms(self, value: int) -> None:
        self._set("poll_interval_ms", value)

    @property
    def locked_file_poll_interval_ms(self) -> int:
        return self.settings.locked_file_poll_interval_ms

    @locked_file_poll_interval_ms.setter
    def locked_file_poll_interval_ms(self, value: int) -> None:
        self._set("locked_file_poll_interval_ms", value)
