"""Append-only activity log and file-based completion signals."""

from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path

from loopsmith.file_io import STATE_DIRNAME, append_text, read_text_lenient
from loopsmith.schemas import IterationRecord
from loopsmith.task_ledger import PLAN_FILENAME, count_unchecked_boxes

logger = logging.getLogger(__name__)

ACTIVITY_FILENAME = "activity.md"
COMPLETE_SENTINEL = "LOOPSMITH_COMPLETE"
DONE_SENTINEL = ".loopsmith-done"


def _truncate(text: str, max_len: int) -> str:
    clean = " ".join((text or "").split())
    if len(clean) <= max_len:
        return clean
    return clean[: max_len - 3] + "..."


def _format_duration(ms: int) -> str:
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


class ProgressLog:
    """Human-readable per-round log at ``.loopsmith/activity.md``.

    The header is written on the first append; entries are only ever
    appended. Write failures are logged and never raised.
    """

    def __init__(self, cwd: str | Path, *, enabled: bool = True) -> None:
        self.cwd = Path(cwd)
        self.path = self.cwd / STATE_DIRNAME / ACTIVITY_FILENAME
        self.enabled = enabled

    def _header(self, task: str) -> str:
        started = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        return (
            "# loopsmith Activity Log\n\n"
            f"**Task:** {_truncate(task, 100)}\n"
            f"**Started:** {started}\n\n"
            "---\n\n"
        )

    def append_entry(self, record: IterationRecord, *, task: str = "") -> bool:
        """Append *record*; returns False when the write failed or logging is off."""
        if not self.enabled:
            return False
        try:
            if not self.path.exists():
                append_text(self.path, self._header(task))
            append_text(self.path, format_entry(record))
        except Exception as exc:
            logger.warning("Could not append progress entry to %s: %s", self.path, exc)
            return False
        return True

    def read(self) -> str:
        return read_text_lenient(self.path)

    def clear(self) -> bool:
        """Remove the whole log; returns True when a file was deleted."""
        try:
            if self.path.exists():
                self.path.unlink()
                return True
        except OSError as exc:
            logger.warning("Could not clear progress log %s: %s", self.path, exc)
        return False


def format_entry(record: IterationRecord) -> str:
    """Render one round as a markdown section."""
    lines = [
        f"### Iteration {record.index} - {record.started_at}",
        "",
        f"**Status:** {record.status.value}",
    ]
    if record.summary:
        lines.append(f"**Summary:** {_truncate(record.summary, 300)}")
    lines.append(f"**Verdict:** {record.verdict}" + (f" ({record.verdict_reason})" if record.verdict_reason else ""))
    lines.append(f"**Duration:** {_format_duration(record.duration_ms)}")
    if record.commit_hash:
        lines.append(f"**Commit:** {record.commit_hash[:7]}")
    if record.cost_usd is not None:
        lines.append(f"**Cost:** ${record.cost_usd:.4f}")
    if record.validation:
        lines.append("**Validation:**")
        for result in record.validation:
            mark = "pass" if result.success else "FAIL"
            lines.append(f"- `{result.command}`: {mark}")
    lines.extend(["", "---", "", ""])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# File-based completion
# ---------------------------------------------------------------------------

def check_file_completion(cwd: str | Path) -> str | None:
    """Return a description of the out-of-band completion signal, if any.

    Any one of these is sufficient: the ``LOOPSMITH_COMPLETE`` file, the
    ``.loopsmith-done`` file, or a plan with at least one ticked box and no
    open ones.
    """
    root = Path(cwd)
    if (root / COMPLETE_SENTINEL).exists():
        return f"{COMPLETE_SENTINEL} file present"
    if (root / DONE_SENTINEL).exists():
        return f"{DONE_SENTINEL} file present"
    try:
        text = read_text_lenient(root / PLAN_FILENAME)
    except OSError as exc:
        logger.debug("Could not read plan for completion check: %s", exc)
        return None
    checked, unchecked = count_unchecked_boxes(text)
    if checked > 0 and unchecked == 0:
        return f"all {checked} checkbox(es) in {PLAN_FILENAME} are ticked"
    return None


def clear_completion_signals(cwd: str | Path) -> list[Path]:
    """Delete sentinel files so a fresh run is not stopped immediately."""
    removed: list[Path] = []
    for name in (COMPLETE_SENTINEL, DONE_SENTINEL):
        path = Path(cwd) / name
        if path.exists():
            path.unlink()
            removed.append(path)
    return removed
