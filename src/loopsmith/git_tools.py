"""Git helpers: working-tree queries, commits, pushes, and pull requests."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import subprocess
from pathlib import Path

from loopsmith.file_io import STATE_DIRNAME

logger = logging.getLogger(__name__)


def _subprocess_isolation_kwargs() -> dict[str, object]:
    """Keep child console events away from the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


class GitError(RuntimeError):
    """Raised when a git or gh command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            **_subprocess_isolation_kwargs(),
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitError(f"`git {' '.join(args)}` could not run: {exc}") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def is_git_repo(repo: str | Path) -> bool:
    """Return True when *repo* is inside a git work tree."""
    try:
        result = _run_git("rev-parse", "--is-inside-work-tree", cwd=Path(repo), check=False)
    except GitError:
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def status_porcelain(repo: str | Path) -> str:
    """Return ``git status --porcelain`` output."""
    return _run_git("status", "--porcelain", cwd=Path(repo)).stdout.strip()


def head_sha(repo: str | Path) -> str | None:
    """Return the short SHA of HEAD, or ``None`` before the first commit."""
    result = _run_git("rev-parse", "--short", "HEAD", cwd=Path(repo), check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def current_branch(repo: str | Path) -> str:
    return _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=Path(repo)).stdout.strip()


def working_tree_digest(repo: str | Path) -> str:
    """Fingerprint HEAD plus every pending change (tracked diff and untracked files).

    Two equal digests mean git sees no difference between the two moments.
    """
    cwd = Path(repo)
    parts = [head_sha(cwd) or "(unborn)", status_porcelain(cwd)]
    diff = _run_git("diff", "HEAD", "--no-color", cwd=cwd, check=False)
    parts.append(diff.stdout if diff.returncode == 0 else "")
    return hashlib.sha256("\x00".join(parts).encode("utf-8", errors="replace")).hexdigest()


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def ensure_git_identity(repo: str | Path) -> None:
    """Set a local commit identity when none is configured."""
    cwd = Path(repo)
    for key, fallback in [
        ("user.name", "loopsmith"),
        ("user.email", "loopsmith@localhost"),
    ]:
        result = _run_git("config", key, cwd=cwd, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            _run_git("config", key, fallback, cwd=cwd)
            logger.info("Set %s = %s in %s", key, fallback, cwd)


def commit_all(repo: str | Path, message: str) -> str | None:
    """Stage everything and commit; return the new SHA, or ``None`` if nothing changed."""
    cwd = Path(repo)
    _run_git("add", "-A", "--", ".", f":(exclude){STATE_DIRNAME}", cwd=cwd)
    if not _run_git("diff", "--cached", "--quiet", cwd=cwd, check=False).returncode:
        return None
    _run_git("commit", "-m", message, cwd=cwd)
    return head_sha(cwd)


def push(repo: str | Path, remote: str = "origin", branch: str | None = None) -> None:
    """Push *branch* (default: current) to *remote*, setting upstream."""
    cwd = Path(repo)
    target = branch or current_branch(cwd)
    _run_git("push", "-u", remote, target, cwd=cwd, timeout=120)
    logger.info("Pushed %s to %s", target, remote)


def create_pull_request(
    repo: str | Path,
    title: str,
    body: str,
    *,
    base: str | None = None,
    gh_binary: str = "gh",
) -> str:
    """Open a pull request with the GitHub CLI and return its URL."""
    resolved = shutil.which(gh_binary) or gh_binary
    cmd = [resolved, "pr", "create", "--title", title, "--body", body]
    if base:
        cmd.extend(["--base", base])
    try:
        result = subprocess.run(
            cmd,
            cwd=Path(repo),
            capture_output=True,
            text=True,
            timeout=120,
            **_subprocess_isolation_kwargs(),
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitError(f"`gh pr create` could not run: {exc}") from exc
    if result.returncode != 0:
        raise GitError(f"`gh pr create` failed (rc={result.returncode}): {result.stderr.strip()}")
    url = result.stdout.strip().splitlines()
    return url[-1] if url else ""


def generate_commit_message(iteration: int, task: str, current_task: str | None = None) -> str:
    """Build a commit message for one loop round."""
    subject_source = current_task or task
    subject = re.sub(r"\s+", " ", subject_source).strip()
    if len(subject) > 60:
        subject = subject[:57] + "..."
    return f"loopsmith: iteration {iteration}: {subject}\n"
