"""
Upload sink: parse a JSON file and post it through a connection.

The pipeline only relies on the Connection protocol. FirebaseConnection is
the default implementation, talking to the Firebase Realtime Database REST API.
"""

import json
import logging
import stat
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

import requests
from pydantic import BaseModel, Field

from json_listener.errors import ParseError, SinkError, ConnectionProviderError


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30  # seconds


def parse_json_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Deserialize a JSON file into a mapping.

    Args:
        path: JSON file to read

    Returns:
        The top-level JSON object. A file holding ``null`` yields an empty dict.

    Raises:
        ParseError: If the file isn't a readable regular file, is malformed, or isn't an object
    """
    path = Path(path)
    try:
        mode = path.stat().st_mode
    except OSError as e:
        raise ParseError(f"Cannot read {path}: {e}", path=path) from e
    if not stat.S_ISREG(mode):
        raise ParseError(f"Not a regular file: {path}", path=path)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ParseError(f"Malformed JSON in {path}: {e}", path=path) from e
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(f"Cannot read {path}: {e}", path=path) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError(
            f"Expected a JSON object in {path}, got {type(data).__name__}",
            path=path
        )
    return data


class Connection(Protocol):
    """What the listener needs from a connection to the remote sink."""

    def is_established(self) -> bool:
        ...

    def post(self, destination_path: Optional[str], data: Dict[str, Any]) -> Any:
        ...


class FirebaseResponse(BaseModel):
    """Result of a successful post to Firebase."""

    status_code: int
    name: Optional[str] = Field(default=None, description="Key Firebase generated for the pushed child")
    body: Any = None


class FirebaseConnection:
    """
    Connection to a Firebase Realtime Database over its REST API.

    ``post`` pushes a new child under ``<base_url>/<destination_path>``.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the connection.

        Args:
            base_url: Database root, e.g. https://my-project.firebaseio.com
            auth_token: Optional database secret or ID token, sent as ``auth``
            timeout: Request timeout in seconds
            session: Session to reuse (one is created if None)

        Raises:
            ConnectionProviderError: If base_url isn't an http(s) URL
        """
        if not base_url or not base_url.startswith(("http://", "https://")):
            raise ConnectionProviderError(f"Invalid database URL: {base_url!r}")

        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = session or requests.Session()
        self._closed = False

    def is_established(self) -> bool:
        return not self._closed

    def url_for(self, destination_path: Optional[str]) -> str:
        """REST endpoint for a database path."""
        segment = (destination_path or "").strip("/")
        if segment:
            return f"{self.base_url}/{segment}.json"
        return f"{self.base_url}/.json"

    def post(self, destination_path: Optional[str], data: Dict[str, Any]) -> FirebaseResponse:
        """
        Push ``data`` as a new child of ``destination_path``.

        Raises:
            ConnectionProviderError: On transport failure or a non-2xx status
        """
        if not self.is_established():
            raise ConnectionProviderError("Firebase connection is closed")

        url = self.url_for(destination_path)
        params = {"auth": self.auth_token} if self.auth_token else None
        logger.debug(f"POST {url} ({len(data)} keys)")

        try:
            response = self.session.post(url, json=data, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ConnectionProviderError(f"POST {url} failed: {e}") from e

        if not response.ok:
            raise ConnectionProviderError(
                f"POST {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        name = body.get("name") if isinstance(body, dict) else None
        return FirebaseResponse(status_code=response.status_code, name=name, body=body)

    def close(self) -> None:
        """Close the underlying HTTP session."""
        if not self._closed:
            self.session.close()
            self._closed = True


class UploadSink:
    """
    Parses a JSON file and posts it through a connection.

    Any failure, whether parsing, a closed connection, or an error raised by
    the connection, comes out as a ParseError or SinkError carrying the path.
    """

    def __init__(self, connection: Connection, parser=parse_json_file):
        """
        Initialize the sink.

        Args:
            connection: Connection to the remote store
            parser: Callable turning a file path into a mapping
        """
        self.connection = connection
        self.parser = parser

    def upload(self, path: Union[str, Path], destination_path: Optional[str]) -> Any:
        """
        Upload one file.

        Args:
            path: JSON file to upload
            destination_path: Path in the sink to post to

        Returns:
            Whatever the connection's post returned

        Raises:
            ParseError: If the file can't be parsed
            SinkError: If the connection is down or the post fails
        """
        path = Path(path)

        if not self.connection.is_established():
            raise SinkError("No connection to the remote sink", path=path)

        try:
            data = self.parser(path)
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Cannot parse {path}: {type(e).__name__}: {e}", path=path) from e

        try:
            return self.connection.post(destination_path, data)
        except SinkError as e:
            if e.path is None:
                e.path = str(path)
            raise
        except Exception as e:
            raise SinkError(f"Post of {path} failed: {type(e).__name__}: {e}", path=path) from e
