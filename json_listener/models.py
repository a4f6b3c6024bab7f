"""
Data models for the JSON listener.

Defines Pydantic models for listener settings, persisted configuration,
and the outcomes reported by the watch loop and lock pollers.
"""

from enum import Enum
from pathlib import Path
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict


class ShutdownMode(str, Enum):
    """What stop() does about lock pollers that are still running."""
    DETACH = "detach"   # Return immediately, pollers finish on their own
    WAIT = "wait"       # Wait up to shutdown_timeout_ms for pollers


class PollerOutcome(str, Enum):
    """Terminal state of a lock poller task."""
    UPLOADED = "uploaded"
    EXHAUSTED = "exhausted"
    INTERRUPTED = "interrupted"


class ExitReason(str, Enum):
    """Why the watch loop returned."""
    STOPPED = "stopped"
    DIRECTORY_INVALIDATED = "directory_invalidated"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    INTERRUPTED = "interrupted"


class ListenerSettings(BaseModel):
    """
    Tunables for the watch loop and lock pollers.

    Assignments are validated, so setting an out-of-range value on a live
    settings object raises instead of silently taking effect.
    """

    model_config = ConfigDict(validate_assignment=True)

    # Poller limit
    max_threads: int = Field(default=100, description="Maximum concurrently active lock pollers (> 2)")
    max_locked_file_tries: int = Field(default=100, description="Lock checks per locked file before giving up (>= 1)")

    # Intervals
    poll_interval_ms: int = Field(default=100, description="Milliseconds between directory event drains")
    locked_file_poll_interval_ms: int = Field(default=100, description="Milliseconds between lock checks of a locked file")

    # Shutdown
    shutdown_mode: ShutdownMode = Field(default=ShutdownMode.DETACH, description="Whether stop() waits for pollers")
    shutdown_timeout_ms: int = Field(default=5000, description="How long stop() waits in wait mode")

    # Event buffer between the observer thread and the watch loop
    max_pending_events: int = Field(default=10000, description="Buffered events before overflow")

    @field_validator('max_threads')
    @classmethod
    def validate_max_threads(cls, v: int) -> int:
        if v <= 2:
            raise ValueError("Maximum threads must be greater than 2.")
        return v

    @field_validator('max_locked_file_tries')
    @classmethod
    def validate_max_locked_file_tries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Maximum tries for locked files must be at least 1.")
        return v

    @field_validator('poll_interval_ms')
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Directory poll interval must be greater than 0 ms.")
        return v

    @field_validator('locked_file_poll_interval_ms')
    @classmethod
    def validate_locked_file_poll_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Locked file poll interval must be greater than 0 ms.")
        return v

    @field_validator('shutdown_timeout_ms')
    @classmethod
    def validate_shutdown_timeout(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Shutdown timeout cannot be negative.")
        return v

    @field_validator('max_pending_events')
    @classmethod
    def validate_max_pending_events(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Pending event buffer must hold at least 1 event.")
        return v

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def locked_file_poll_interval_seconds(self) -> float:
        return self.locked_file_poll_interval_ms / 1000.0

    @property
    def shutdown_timeout_seconds(self) -> float:
        return self.shutdown_timeout_ms / 1000.0


class ListenerConfig(BaseModel):
    """
    Complete listener configuration.

    One watched directory, one destination path in the sink, one log directory.
    """

    model_config = ConfigDict(validate_assignment=True)

    version: str = "1.0"
    watch_dir: Optional[str] = Field(default=None, description="Directory watched for new .json files")
    destination_path: str = Field(default="", description="Path in the sink that files are posted to")
    log_dir: Optional[str] = Field(default=None, description="Directory for the operational and failure logs")
    database_url: Optional[str] = Field(default=None, description="Base URL of the Firebase Realtime Database")
    settings: ListenerSettings = Field(default_factory=ListenerSettings)

    # Metadata
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    @field_validator('watch_dir')
    @classmethod
    def validate_watch_dir(cls, v: Optional[str]) -> Optional[str]:
        """Validate and resolve the watched directory."""
        if v is None:
            return v
        path = Path(v).resolve()
        if not path.exists():
            raise ValueError(f"Watch directory does not exist: {path}")
        if not path.is_dir():
            raise ValueError(f"Watch path is not a directory: {path}")
        return str(path)

    @field_validator('log_dir')
    @classmethod
    def validate_log_dir(cls, v: Optional[str]) -> Optional[str]:
        """Resolve the log directory (created on use)."""
        if v is None:
            return v
        path = Path(v).resolve()
        if path.exists() and not path.is_dir():
            raise ValueError(f"Log path is not a directory: {path}")
        return str(path)

    def is_runnable(self) -> bool:
        """True when every path the listener needs is configured."""
        return bool(self.watch_dir and self.log_dir)

    def touch(self) -> None:
        self.updated_at = datetime.now().isoformat()


class FileEvent(BaseModel):
    """A new directory entry reported by the observer."""

    path: Path = Field(..., description="Absolute path of the new entry")
    kind: str = Field(default="created", description="created, or moved into the directory")
    detected_at: str = Field(default_factory=lambda: datetime.now().isoformat())


class ListenerStatus(BaseModel):
    """Point-in-time snapshot of a listener."""

    listening: bool = False
    idle: bool = True
    watch_dir: str
    destination_path: str
    active_pollers: int = 0
    failed_count: int = 0
    exit_reason: Optional[ExitReason] = None
