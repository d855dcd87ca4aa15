"""Parse the markdown implementation plan into a task ledger.

Two layouts are recognised. Hierarchical plans use ``## Task N: name`` (or
``Phase N``) headings, each owning ``- [ ]`` / ``- [x]`` subtasks. Plans
without such headings fall back to treating every top-level checkbox as its
own task.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path

from loopsmith.file_io import read_text_lenient

logger = logging.getLogger(__name__)

PLAN_FILENAME = "IMPLEMENTATION_PLAN.md"

_TASK_HEADER_RES = (
    re.compile(r"^#{2,3}\s*Phase\s*\d+[:\s-]+(.+)$", re.IGNORECASE),
    re.compile(r"^#{2,3}\s*Task\s*\d+[:\s-]+(.+)$", re.IGNORECASE),
)
_ANY_HEADER_RE = re.compile(r"^#{1,6}\s+")
_SUBTASK_RE = re.compile(r"^\s*[-*]\s*\[([xX ])\]\s*(.+)$")
_FLAT_TASK_RE = re.compile(r"^[-*]\s*\[([xX ])\]\s*(.+)$", re.MULTILINE)

_ESTIMATE_PATTERNS = (
    re.compile(r"^#{2,3}\s+", re.MULTILINE),
    re.compile(r"^\s*[-*]\s*\[[ xX]\]", re.MULTILINE),
    re.compile(r"^\s*\d+\.\s+", re.MULTILINE),
)


@dataclass(frozen=True, slots=True)
class Subtask:
    name: str
    completed: bool


@dataclass(frozen=True, slots=True)
class Task:
    """A plan task; completion is derived from subtasks when it has any."""

    name: str
    index: int
    subtasks: tuple[Subtask, ...] = ()
    own_completed: bool = False

    @property
    def completed(self) -> bool:
        if self.subtasks:
            return all(s.completed for s in self.subtasks)
        return self.own_completed

    @property
    def completed_subtasks(self) -> int:
        return sum(1 for s in self.subtasks if s.completed)


@dataclass(frozen=True, slots=True)
class TaskLedgerSnapshot:
    """Immutable view of the plan at one point in time."""

    tasks: tuple[Task, ...] = field(default_factory=tuple)

    @property
    def total(self) -> int:
        return len(self.tasks)

    @property
    def completed(self) -> int:
        return sum(1 for t in self.tasks if t.completed)

    @property
    def pending(self) -> int:
        return self.total - self.completed

    @property
    def has_tasks(self) -> bool:
        return bool(self.tasks)


EMPTY_LEDGER = TaskLedgerSnapshot()


def _match_task_header(line: str) -> str | None:
    for header_re in _TASK_HEADER_RES:
        m = header_re.match(line)
        if m:
            return m.group(1).strip()
    return None


def _parse_hierarchical(text: str) -> list[Task]:
    tasks: list[Task] = []
    name: str | None = None
    subtasks: list[Subtask] = []

    def _close() -> None:
        if name is not None:
            tasks.append(Task(name=name, index=len(tasks), subtasks=tuple(subtasks)))

    for raw in text.splitlines():
        line = raw.rstrip()
        header_name = _match_task_header(line.strip())
        if header_name is not None:
            _close()
            name = header_name
            subtasks = []
            continue
        if _ANY_HEADER_RE.match(line.strip()):
            _close()
            name = None
            subtasks = []
            continue
        if name is None:
            continue
        m = _SUBTASK_RE.match(line)
        if m:
            subtasks.append(Subtask(name=m.group(2).strip(), completed=m.group(1) in "xX"))
    _close()
    return tasks


def _parse_flat(text: str) -> list[Task]:
    return [
        Task(name=m.group(2).strip(), index=i, own_completed=m.group(1) in "xX")
        for i, m in enumerate(_FLAT_TASK_RE.finditer(text))
    ]


def parse_plan(text: str) -> TaskLedgerSnapshot:
    """Parse plan markdown into a :class:`TaskLedgerSnapshot`.

    A task heading with no checkboxes underneath counts as pending.
    """
    tasks = _parse_hierarchical(text or "")
    if not tasks:
        tasks = _parse_flat(text or "")
    return TaskLedgerSnapshot(tasks=tuple(tasks))


def plan_path(cwd: str | Path) -> Path:
    return Path(cwd) / PLAN_FILENAME


def load_ledger(cwd: str | Path) -> TaskLedgerSnapshot:
    """Read and parse the plan file; missing or unreadable plans are empty."""
    path = plan_path(cwd)
    try:
        return parse_plan(read_text_lenient(path))
    except OSError as exc:
        logger.warning("Could not read plan %s: %s", path, exc)
        return EMPTY_LEDGER


def current_task(snapshot: TaskLedgerSnapshot) -> Task | None:
    """Return the first incomplete task, or ``None`` when all are done."""
    for task in snapshot.tasks:
        if not task.completed:
            return task
    return None


def count_unchecked_boxes(text: str) -> tuple[int, int]:
    """Return ``(checked, unchecked)`` checkbox counts anywhere in *text*."""
    checked = unchecked = 0
    for raw in (text or "").splitlines():
        m = _SUBTASK_RE.match(raw)
        if not m:
            continue
        if m.group(1) in "xX":
            checked += 1
        else:
            unchecked += 1
    return checked, unchecked


# ---------------------------------------------------------------------------
# Iteration budgeting
# ---------------------------------------------------------------------------

def estimate_tasks_from_text(text: str) -> int:
    """Rough task count for a free-form description (headings, boxes, numbered items)."""
    best = 0
    for pattern in _ESTIMATE_PATTERNS:
        best = max(best, len(pattern.findall(text or "")))
    return best


def estimate_max_iterations(
    snapshot: TaskLedgerSnapshot,
    task_text: str = "",
    *,
    default: int = 7,
) -> int:
    """Pick a starting iteration budget from the plan, or from the task text.

    With a plan: pending tasks plus a 30% buffer (at least 2), clamped to
    3..25. Without one: estimated tasks from *task_text* plus the same
    buffer, clamped to 3..15, or *default* when nothing can be estimated.
    """
    if snapshot.has_tasks:
        pending = snapshot.pending
        buffer = max(2, math.ceil(pending * 0.3))
        return min(25, max(3, pending + buffer))
    estimated = estimate_tasks_from_text(task_text)
    if estimated <= 0:
        return default
    return min(15, max(3, estimated + max(2, math.ceil(estimated * 0.3))))


def regrow_budget(current_max: int, pending: int, hard_cap: int) -> int:
    """Return the grown iteration budget after the plan expanded; never shrinks."""
    buffer = max(3, math.ceil(pending * 0.3))
    return max(current_max, min(hard_cap, max(current_max, pending + buffer)))
