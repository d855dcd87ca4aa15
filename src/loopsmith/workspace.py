"""Detect whether a round actually changed the working tree."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from loopsmith.file_io import STATE_DIRNAME
from loopsmith.git_tools import GitError, working_tree_digest

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset(
    {
        ".git",
        STATE_DIRNAME,
        "node_modules",
        "__pycache__",
        ".venv",
        "venv",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        "dist",
        "build",
    }
)


@dataclass(frozen=True, slots=True)
class WorkspaceSnapshot:
    file_count: int
    total_bytes: int
    latest_mtime_ns: int
    git_digest: str | None = None


def take_snapshot(cwd: str | Path, *, use_git: bool = True) -> WorkspaceSnapshot:
    """Walk *cwd* (skipping tool/vendor dirs) and optionally fingerprint git state."""
    root = Path(cwd)
    count = size = latest = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS]
        for name in filenames:
            try:
                st = os.stat(os.path.join(dirpath, name))
            except OSError:
                continue
            count += 1
            size += st.st_size
            latest = max(latest, st.st_mtime_ns)

    digest: str | None = None
    if use_git:
        try:
            digest = working_tree_digest(root)
        except GitError as exc:
            logger.debug("git fingerprint unavailable: %s", exc)
    return WorkspaceSnapshot(count, size, latest, digest)


def has_changed(before: WorkspaceSnapshot, after: WorkspaceSnapshot) -> bool:
    """True when any signal differs; git digests count only when both exist."""
    if (before.file_count, before.total_bytes, before.latest_mtime_ns) != (
        after.file_count,
        after.total_bytes,
        after.latest_mtime_ns,
    ):
        return True
    if before.git_digest is not None and after.git_digest is not None:
        return before.git_digest != after.git_digest
    return False
