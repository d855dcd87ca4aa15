"""Text I/O helpers: atomic whole-file replacement and locked appends."""

from __future__ import annotations

import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

STATE_DIRNAME = ".loopsmith"
"""Per-project state directory, relative to the working directory."""

_REPLACE_MAX_RETRIES = 8
_REPLACE_RETRY_SECONDS = 0.01

_LOCKS_GUARD = threading.Lock()
_LOCKS: dict[str, threading.RLock] = {}


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize writers to *path* within this process."""
    key = str(path.resolve())
    with _LOCKS_GUARD:
        lock = _LOCKS.setdefault(key, threading.RLock())
    with lock:
        yield


def _replace_with_retry(src: Path, dst: Path) -> None:
    """Move *src* over *dst*, retrying briefly while another handle holds *dst*."""
    last_error: OSError | None = None
    for attempt in range(_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        if attempt < _REPLACE_MAX_RETRIES - 1:
            time.sleep(_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace *path* with *content* so readers never observe a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
        with locked_path(path):
            _replace_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append *content* to *path*, creating parent directories on demand."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with locked_path(path), path.open("a", encoding=encoding) as handle:
        handle.write(content)


def read_text_lenient(path: Path) -> str:
    """Return the file text, or ``""`` when absent; undecodable bytes are replaced."""
    if not path.is_file():
        return ""
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("utf-8", errors="replace")
