"""
Exception types for the JSON listener.

Per-file failures (UploadError and subclasses) are recorded and never stop the
watch loop. WatchRegistrationError and ResourceExhaustionError are fatal to the
loop. ConfigurationError is raised at the boundary, before anything runs.
"""

from pathlib import Path
from typing import Optional, Union


class JsonListenerError(Exception):
    """Base class for all listener errors."""


class ConfigurationError(JsonListenerError, ValueError):
    """A tunable or constructor argument is out of range or invalid."""


class WatchRegistrationError(JsonListenerError):
    """The watched directory could not be registered, or became unreachable."""

    def __init__(self, message: str, directory: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.directory = str(directory) if directory is not None else None


class ListenerStateError(JsonListenerError):
    """A listener was started again after it stopped listening."""


class ResourceExhaustionError(JsonListenerError):
    """Spawning another lock poller would exceed the poller limit."""

    def __init__(self, message: str, active: int = 0, limit: int = 0):
        super().__init__(message)
        self.active = active
        self.limit = limit


class UploadError(JsonListenerError):
    """A single file could not be delivered to the sink."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.path = str(path) if path is not None else None


class ParseError(UploadError):
    """A file could not be read or is not a JSON object."""


class SinkError(UploadError):
    """The remote sink refused or failed to accept a post."""


class ConnectionProviderError(SinkError):
    """Connection-level failure talking to the sink (transport or HTTP status)."""

    def __init__(
        self,
        message: str,
        path: Optional[Union[str, Path]] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, path=path)
        self.status_code = status_code
