"""
JSON Listener - Watch a directory and upload new JSON files to Firebase.

Every new .json file in the watched directory is parsed and posted to a
destination path in a Firebase Realtime Database. Files still being written
are retried on their own poller thread until they unlock.

Logs (written to the configured log directory):
- json-listener-log.log          - operational log
- json-listener-failed-files.txt - one path per failed upload
"""

__version__ = "1.0.0"
__author__ = "JSON Listener Project"

from json_listener.models import (
    ListenerSettings,
    ListenerConfig,
    ListenerStatus,
    ShutdownMode,
    ExitReason,
    PollerOutcome,
)

from json_listener.errors import (
    JsonListenerError,
    ConfigurationError,
    WatchRegistrationError,
    ListenerStateError,
    ResourceExhaustionError,
    UploadError,
    ParseError,
    SinkError,
    ConnectionProviderError,
)

from json_listener.config import ConfigManager, DEFAULT_CONFIG_FILE
from json_listener.sink import Connection, FirebaseConnection, UploadSink, parse_json_file
from json_listener.failures import FailureRecorder, read_failure_log
from json_listener.locks import is_file_locked
from json_listener.listener import JsonListener

__all__ = [
    # Models
    "ListenerSettings",
    "ListenerConfig",
    "ListenerStatus",
    "ShutdownMode",
    "ExitReason",
    "PollerOutcome",
    # Errors
    "JsonListenerError",
    "ConfigurationError",
    "WatchRegistrationError",
    "ListenerStateError",
    "ResourceExhaustionError",
    "UploadError",
    "ParseError",
    "SinkError",
    "ConnectionProviderError",
    # Config
    "ConfigManager",
    "DEFAULT_CONFIG_FILE",
    # Components
    "Connection",
    "FirebaseConnection",
    "UploadSink",
    "parse_json_file",
    "FailureRecorder",
    "read_failure_log",
    "is_file_locked",
    "JsonListener",
]
