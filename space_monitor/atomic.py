"""
Atomic JSON persistence and inter-process file locking for the config file.
"""

import atexit
import fcntl
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional


class AtomicFileWriter:
    """
    Writes JSON through a temp file in the target directory, then
    ``os.replace`` onto the target, so readers never see a partial file.
    """

    @staticmethod
    def write_json(filepath: Path, data: Any, indent: int = 2) -> None:
        """
        Atomically write JSON data to a file.

        Args:
            filepath: Target file path
            data: Data to serialize as JSON
            indent: JSON indentation level
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_name = tempfile.mkstemp(dir=filepath.parent, prefix=f".{filepath.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as tmp_file:
                json.dump(data, tmp_file, indent=indent, default=str)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(temp_name, filepath)
        except BaseException:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

    @staticmethod
    def read_json(filepath: Path, default: Any = None) -> Any:
        """
        Read a JSON file.

        Returns:
            Parsed data, or default if the file is missing or unreadable
        """
        filepath = Path(filepath)
        if not filepath.exists():
            return default

        try:
            with open(filepath, "r") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError):
            return default


class FileLock:
    """
    Exclusive fcntl lock on a lock file.

    Usage:
        with FileLock(path):
            ...
    """

    def __init__(self, lockfile: Path):
        self.lockfile = Path(lockfile)
        self.lockfile.parent.mkdir(parents=True, exist_ok=True)
        self.fd: Optional[Any] = None

    def acquire(self, timeout: float = 10.0) -> bool:
        """
        Acquire the lock, polling until timeout.

        Returns:
            True if acquired, False on timeout
        """
        deadline = time.monotonic() + timeout

        while True:
            fd = open(self.lockfile, "w")
            try:
                fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                fd.close()
                if time.monotonic() >= deadline:
                    return False
                time.sleep(0.1)
                continue

            fd.write(f"{os.getpid()}\n")
            fd.flush()
            self.fd = fd
            atexit.register(self.release)
            return True

    def release(self) -> None:
        """Release the lock if held."""
        if self.fd is None:
            return

        try:
            fcntl.flock(self.fd.fileno(), fcntl.LOCK_UN)
        finally:
            self.fd.close()
            self.fd = None
            atexit.unregister(self.release)

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Could not acquire lock: {self.lockfile}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
