"""
Atomic file operations and file locking utilities.

Settings and mapping files are rewritten through a temporary file so a
crash never leaves them half written, and guarded by an fcntl lock so two
runs do not interleave their writes.
"""

import os
import fcntl
import tempfile
import time
from pathlib import Path
from typing import IO, Optional


class AtomicFileWriter:
    """
    Atomic file writer using temp file + atomic replace.

    Writes to a temporary file in the target directory, then replaces the
    target with os.replace().
    """

    @staticmethod
    def write_text(filepath: Path, text: str, encoding: str = "utf-8") -> None:
        """
        Atomically write text to a file.

        Args:
            filepath: Target file path
            text: Text to write
            encoding: Text encoding

        Raises:
            OSError: If the write fails (temp file is cleaned up)
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        temp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding=encoding,
                newline="",
                dir=filepath.parent,
                prefix=f".{filepath.name}.",
                suffix=".tmp",
                delete=False
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                tmp_file.write(text)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            os.replace(temp_path, filepath)

        except BaseException:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()
            raise

    @staticmethod
    def read_text(filepath: Path, encoding: str = "utf-8") -> Optional[str]:
        """
        Read a text file.

        Returns:
            File contents, or None if the file does not exist
        """
        filepath = Path(filepath)
        if not filepath.exists():
            return None
        return filepath.read_text(encoding=encoding)


class FileLock:
    """
    Exclusive inter-process lock on a lock file (fcntl).

    Usage:
        with FileLock(path.with_suffix(".lock")):
            ...
    """

    def __init__(self, lockfile: Path):
        self.lockfile = Path(lockfile)
        self._fd: Optional[IO[str]] = None

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def acquire(self, timeout: float = 10.0) -> bool:
        """
        Acquire the lock, polling until timeout.

        Args:
            timeout: Maximum seconds to wait

        Returns:
            True if acquired, False on timeout
        """
        self.lockfile.parent.mkdir(parents=True, exist_ok=True)
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
            self._fd = fd
            return True

    def release(self) -> None:
        """Release the lock and remove the lock file."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None
        try:
            self.lockfile.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "FileLock":
        if not self.acquire():
            raise RuntimeError(f"Could not acquire lock: {self.lockfile}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False
