"""
Foreground daemon running a JsonListener.

Runs as a systemd user service or from a terminal. SIGTERM and SIGINT ask the
listener to stop; the listener's exit reason becomes the process exit code.
"""

import sys
import signal
import logging
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from json_listener.config import ConfigManager, DEFAULT_CONFIG_FILE, format_validation_error
from json_listener.errors import ConfigurationError, JsonListenerError, WatchRegistrationError
from json_listener.listener import JsonListener
from json_listener.models import ExitReason, ListenerConfig, ShutdownMode
from json_listener.sink import Connection


# Exit codes per listener exit reason
EXIT_CODES = {
    ExitReason.STOPPED: 0,
    ExitReason.INTERRUPTED: 0,
    ExitReason.DIRECTORY_INVALIDATED: 3,
    ExitReason.RESOURCE_EXHAUSTED: 2,
}
EXIT_CONFIG_ERROR = 1

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

logger = logging.getLogger("json_listener.daemon")


def configure_logging(level: int = logging.INFO) -> None:
    """Log to stdout and keep watchdog's own loggers quiet."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Suppress verbose watchdog library logging
    logging.getLogger("watchdog.observers.inotify_buffer").setLevel(logging.WARNING)
    logging.getLogger("watchdog.observers").setLevel(logging.WARNING)


class ListenerDaemon:
    """
    Runs one JsonListener until a signal or a fatal condition.
    """

    def __init__(
        self,
        config_file: Optional[Path] = None,
        connection: Optional[Connection] = None,
        install_signal_handlers: bool = True,
        overrides: Optional[Dict[str, Optional[str]]] = None
    ):
        """
        Initialize daemon.

        Args:
            config_file: Path to configuration file
            connection: Connection to post through (built from config if None)
            install_signal_handlers: Hook SIGTERM/SIGINT (main thread only)
            overrides: Config fields to use instead of the file (None values are ignored)
        """
        self.config_file = config_file or DEFAULT_CONFIG_FILE
        self.connection = connection
        self.overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        self.listener: Optional[JsonListener] = None
        self.shutdown_requested = False

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, stopping listener...")
        self.shutdown_requested = True
        # Runs on the thread blocked in start(); waiting here would stall the loop
        if self.listener is not None:
            self.listener.request_stop()

    def build_listener(self) -> JsonListener:
        """
        Create the listener from the configuration file.

        Raises:
            ConfigurationError: If the configuration is incomplete or invalid
        """
        config_manager = ConfigManager(self.config_file)
        config = config_manager.config

        updates = dict(self.overrides)
        database_url = config_manager.get_database_url()
        if database_url and "database_url" not in updates:
            updates["database_url"] = database_url

        if updates:
            try:
                config = ListenerConfig(**{**config.model_dump(), **updates})
            except ValidationError as e:
                raise ConfigurationError(format_validation_error(e)) from e

        return JsonListener.from_config(
            config,
            connection=self.connection,
            auth_token=config_manager.get_auth_token()
        )

    def run(self) -> int:
        """
        Run the listener in the foreground.

        Returns:
            Process exit code
        """
        logger.info("=" * 60)
        logger.info("JSON Listener Starting")
        logger.info("=" * 60)

        try:
            self.listener = self.build_listener()
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            return EXIT_CONFIG_ERROR
        except JsonListenerError as e:
            logger.error(f"Failed to create listener: {e}")
            return EXIT_CONFIG_ERROR

        listener = self.listener
        logger.info(f"Watch directory: {listener.watch_dir}")
        logger.info(f"Destination path: {listener.destination_path!r}")
        logger.info(f"Log directory: {listener.log_dir}")

        if self.shutdown_requested:
            listener.request_stop()

        try:
            reason = listener.start()
        except WatchRegistrationError as e:
            logger.error(f"Cannot watch directory: {e}")
            listener.close()
            return EXIT_CODES[ExitReason.DIRECTORY_INVALIDATED]

        self._shutdown(reason)
        return EXIT_CODES[reason]

    def _shutdown(self, reason: ExitReason) -> None:
        """Log the final state and release the listener's files."""
        listener = self.listener
        status = listener.status()

        logger.info("=" * 60)
        logger.info(f"JSON Listener Shutting Down ({reason.value})")
        logger.info("=" * 60)

        if listener.fatal_error is not None:
            logger.error(f"Fatal error: {listener.fatal_error}")

        if status.active_pollers:
            timeout = None
            if listener.settings.shutdown_mode == ShutdownMode.WAIT:
                timeout = listener.settings.shutdown_timeout_seconds
            logger.info(f"Waiting for {status.active_pollers} lock poller(s) to finish...")
            if not listener.wait_for_pollers(timeout):
                logger.warning(f"{listener.active_pollers} lock poller(s) still running, interrupting them")

        logger.info(f"Failed uploads this run: {len(listener.failure_recorder)}")
        listener.close()
        logger.info("Listener stopped")


def main():
    """Daemon entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="JSON Listener Daemon"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args()

    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    daemon = ListenerDaemon(config_file=args.config)
    sys.exit(daemon.run())


if __name__ == "__main__":
    main()
