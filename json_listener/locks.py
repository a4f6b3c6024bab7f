"""
Detection of files that are still being written by another process.

On POSIX the check takes a non-blocking exclusive flock on a read-only handle
and releases it straight away; a writer holding the lock makes the check fail.
On Windows, renaming a file onto itself fails while another process has it
open without delete sharing, which is the same check the listener always made.
"""

import os
from pathlib import Path
from typing import Callable, Union

if os.name == "nt":
    fcntl = None
else:
    import fcntl


# Signature shared by every lock detector: path -> "still being written?"
LockDetector = Callable[[Path], bool]


def _is_locked_posix(path: Path) -> bool:
    # O_NONBLOCK: opening a FIFO for reading would otherwise wait for a writer
    try:
        fd = os.open(path, os.O_RDONLY | os.O_NONBLOCK)
    except FileNotFoundError:
        return False
    except PermissionError:
        return True

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, OSError):
        return True
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
        return False
    finally:
        os.close(fd)


def _is_locked_windows(path: Path) -> bool:
    if not path.exists():
        return False
    try:
        os.rename(path, path)
    except OSError:
        return True
    return False


def is_file_locked(path: Union[str, Path]) -> bool:
    """
    Check whether a file is held for exclusive write by another process.

    Never modifies the file and never blocks. A file that no longer exists
    is reported as unlocked; reading it will fail later and be recorded.

    Args:
        path: File to check

    Returns:
        True if the file is locked
    """
    path = Path(path)
    if fcntl is None:
        return _is_locked_windows(path)
    return _is_locked_posix(path)
