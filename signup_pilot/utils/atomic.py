"""Atomic file writes for checkpoint and state persistence.

A checkpoint that is half-written when the process dies is worse than no
checkpoint at all, so every write goes to a temp file in the target directory
and is renamed over the destination.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, TextIO

from signup_pilot.utils.logging import get_logger

logger = get_logger("utils.atomic")


class AtomicWriteError(Exception):
    """Error during atomic write operation."""

    pass


@contextmanager
def atomic_write(
    path: Path,
    encoding: str = "utf-8",
) -> Generator[TextIO, None, None]:
    """
    Context manager for atomic text writes.

    Writes to a temporary file first, then renames it over the target path.

    Args:
        path: Target file path
        encoding: Text encoding

    Yields:
        File handle for writing

    Raises:
        AtomicWriteError: If the write or rename fails
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_name = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    temp_path = Path(temp_name)
    success = False

    try:
        os.close(fd)

        with open(temp_path, "w", encoding=encoding) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())

        temp_path.replace(path)
        success = True

        logger.debug("atomic_write_success", path=str(path))

    except Exception as e:
        logger.error("atomic_write_failed", path=str(path), error=str(e))
        raise AtomicWriteError(f"Failed to atomically write {path}: {e}") from e

    finally:
        if not success and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass


def atomic_write_json(
    path: Path,
    data: Any,
    indent: int = 2,
    default: Any = str,
) -> None:
    """
    Atomically write JSON data to a file.

    Args:
        path: Target file path
        data: Data to serialize as JSON
        indent: JSON indentation level
        default: Default function for non-serializable objects
    """
    with atomic_write(path) as f:
        json.dump(data, f, indent=indent, default=default)


def read_json(path: Path) -> Any:
    """
    Read JSON from a file written by atomic_write_json.

    Returns:
        Parsed data, or None when the file does not exist
    """
    path = Path(path)
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))
