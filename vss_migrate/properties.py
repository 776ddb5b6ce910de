"""
key=value properties files.

Used for run settings and the author e-mail mapping. Lines that are empty,
start with '#', or have no '=' are ignored; a line is split at its first
'=' and both sides are trimmed.
"""

import logging
from pathlib import Path
from typing import Dict, Mapping

from vss_migrate.atomic import AtomicFileWriter, FileLock
from vss_migrate.errors import ConfigurationIOError


logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 5.0  # seconds


def parse_properties(text: str) -> Dict[str, str]:
    """Parse properties text into a dict (later duplicates win)."""
    result: Dict[str, str] = {}
    for line in text.splitlines():
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key in result:
            logger.debug(f"Duplicate property '{key}', using last value")
        result[key] = value.strip()
    return result


def format_properties(mapping: Mapping[str, str]) -> str:
    """Serialize a mapping as properties text."""
    lines = []
    for key, value in mapping.items():
        if "=" in key:
            raise ValueError(f"Property key must not contain '=': {key!r}")
        lines.append(f"{key}={value}\n")
    return "".join(lines)


def read_properties(path: Path, encoding: str = "utf-8") -> Dict[str, str]:
    """
    Read a properties file.

    Raises:
        ConfigurationIOError: If the file is missing or unreadable
    """
    try:
        text = Path(path).read_text(encoding=encoding)
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationIOError(f"Cannot read {path}: {e}") from e
    return parse_properties(text)


def write_properties(path: Path, mapping: Mapping[str, str], encoding: str = "utf-8") -> None:
    """
    Atomically write a properties file under a file lock.

    Raises:
        ConfigurationIOError: If the file cannot be written
    """
    path = Path(path)
    lock = FileLock(path.with_name(f".{path.name}.lock"))

    if not lock.acquire(timeout=LOCK_TIMEOUT):
        raise ConfigurationIOError(f"Could not acquire lock for {path}")

    try:
        AtomicFileWriter.write_text(path, format_properties(mapping), encoding=encoding)
    except OSError as e:
        raise ConfigurationIOError(f"Cannot write {path}: {e}") from e
    finally:
        lock.release()
