"""
Atomic JSON persistence for the listener configuration file.

A config file is never left half-written: data goes to a temporary file in
the same directory, which then replaces the target with os.replace().
"""

import os
import json
import tempfile
from pathlib import Path
from typing import Any


class AtomicFileWriter:
    """Temp file + atomic replace writer for small JSON documents."""

    @staticmethod
    def write_json(filepath: Path, data: Any, indent: int = 2) -> None:
        """
        Atomically write JSON data to a file.

        Args:
            filepath: Target file path (parent directories are created)
            data: Data to serialize as JSON
            indent: JSON indentation level

        Raises:
            OSError: If the write fails (the temp file is removed first)
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_name = tempfile.mkstemp(
            dir=filepath.parent,
            prefix=f".{filepath.name}.",
            suffix='.tmp'
        )
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as tmp_file:
                json.dump(data, tmp_file, indent=indent, default=str)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            os.replace(temp_path, filepath)
        except BaseException:
            if temp_path.exists():
                temp_path.unlink()
            raise

    @staticmethod
    def read_json(filepath: Path, default: Any = None) -> Any:
        """
        Read a JSON file, falling back to a default.

        Args:
            filepath: File to read
            default: Returned if the file is missing or not valid JSON

        Returns:
            Parsed JSON data or default value
        """
        filepath = Path(filepath)

        if not filepath.exists():
            return default

        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError):
            return default
