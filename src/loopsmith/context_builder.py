"""Assemble the per-round prompt and keep it inside a token budget.

Prompt shape depends on the round, not only on length: round 1 gets the
full task, rounds 2-3 an abbreviated view, and later rounds a minimal one.
Each :class:`RoundTier` maps to a pure fragment builder.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from loopsmith.file_io import read_text_lenient
from loopsmith.task_ledger import PLAN_FILENAME, TaskLedgerSnapshot, current_task

DEFAULT_TOKEN_BUDGET = 0
"""Zero disables budget truncation."""

CHARS_PER_TOKEN_CODE = 3.5
CHARS_PER_TOKEN_PROSE = 4.0

ABBREVIATED_SUMMARY_CHARS = 1500
MINIMAL_SUMMARY_CHARS = 500
FULL_FEEDBACK_CHARS = 4000
ABBREVIATED_FEEDBACK_CHARS = 2000
MINIMAL_FEEDBACK_CHARS = 500
SPECS_SUMMARY_CHARS = 1500
SPECS_HINT_CHARS = 500
SPECS_DIRNAME = "specs"

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_CODE_HINT_RE = re.compile(r"```|[{};]\s*$|^\s*(def|class|import|function|const|let)\s", re.MULTILINE)
_CODE_LIKE_MIN_HITS = 3


class RoundTier(str, Enum):
    FULL = "full"
    ABBREVIATED = "abbreviated"
    MINIMAL = "minimal"


def tier_for_iteration(iteration: int) -> RoundTier:
    if iteration <= 1:
        return RoundTier.FULL
    if iteration <= 3:
        return RoundTier.ABBREVIATED
    return RoundTier.MINIMAL


@dataclass(frozen=True, slots=True)
class RoundContext:
    """Everything a tier needs to render its fragments."""

    iteration: int
    max_iterations: int
    task: str
    ledger: TaskLedgerSnapshot
    validation_feedback: str | None = None
    completion_token: str | None = None
    prompt_prefix: str | None = None
    recent_rounds: tuple[str, ...] = field(default_factory=tuple)
    specs_summary: str | None = None


@dataclass(frozen=True, slots=True)
class BuiltContext:
    prompt: str
    tier: RoundTier
    estimated_tokens: int
    was_truncated: bool = False


# ---------------------------------------------------------------------------
# Token estimates and truncation
# ---------------------------------------------------------------------------

def _looks_like_code(text: str) -> bool:
    return len(_CODE_HINT_RE.findall(text)) >= _CODE_LIKE_MIN_HITS


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: ~3.5 chars/token for code, ~4 for prose."""
    if not text:
        return 0
    ratio = CHARS_PER_TOKEN_CODE if _looks_like_code(text) else CHARS_PER_TOKEN_PROSE
    return math.ceil(len(text) / ratio)


def truncation_marker(max_tokens: int) -> str:
    return f"\n\n[Context truncated to fit {max_tokens} token budget]"


def truncate_to_budget(text: str, max_tokens: int) -> str:
    """Cut *text* to fit *max_tokens*, preferring paragraph then line breaks.

    A boundary is used only when it lies in the back half of the allowed
    length; otherwise the text is hard-cut. The marker is counted against
    the budget, so the result always fits and a second call returns it
    unchanged.
    """
    if max_tokens <= 0 or estimate_tokens(text) <= max_tokens:
        return text
    marker = truncation_marker(max_tokens)
    limit = int(max_tokens * CHARS_PER_TOKEN_CODE) - len(marker)
    if limit <= 0:
        return marker.strip()[: int(max_tokens * CHARS_PER_TOKEN_CODE)]

    head = text[:limit]
    cut = head.rfind("\n\n")
    if cut < limit * 0.5:
        cut = head.rfind("\n")
    if cut < limit * 0.5:
        cut = limit
    return text[:cut].rstrip() + marker


def compress_feedback(feedback: str, max_chars: int = ABBREVIATED_FEEDBACK_CHARS) -> str:
    """Shrink validation feedback, keeping section headers ahead of bodies.

    Sections beyond the budget are dropped with a count of how many were
    omitted.
    """
    clean = _ANSI_RE.sub("", feedback or "").strip()
    if len(clean) <= max_chars:
        return clean

    lines = clean.splitlines()
    sections = sum(1 for line in lines if line.startswith("### "))
    out = ["## Validation Failed"]
    length = len(out[0]) + 1
    seen_sections = 0
    body_full = False
    for line in lines:
        if line.startswith("## ") and not line.startswith("### "):
            continue
        if line.startswith("### "):
            if seen_sections and length + len(line) > max_chars - 100:
                break
            seen_sections += 1
            body_full = False
            out.append(line)
            length += len(line) + 1
            continue
        if body_full:
            continue
        if length + len(line) + 1 <= max_chars - 50:
            out.append(line)
            length += len(line) + 1
        else:
            body_full = True
            if out[-1].startswith("```"):
                continue
            out.append("```")
            length += 4
    omitted = sections - seen_sections
    if omitted > 0:
        out.append(f"\n[{omitted} more failing section(s) omitted]")
    out.append("\nPlease fix the above issues before continuing.")
    return "\n".join(out)


def summarize_task(task: str, max_chars: int) -> str:
    """Return the leading paragraphs of *task* that fit in *max_chars*."""
    text = (task or "").strip()
    if len(text) <= max_chars:
        return text
    paragraphs = text.split("\n\n")
    kept: list[str] = []
    used = 0
    for para in paragraphs:
        if used + len(para) + 2 > max_chars:
            break
        kept.append(para)
        used += len(para) + 2
    if not kept:
        cut = text[:max_chars].rsplit(" ", 1)[0]
        return cut.rstrip() + " ..."
    return "\n\n".join(kept) + "\n\n..."


def build_specs_summary(cwd: str | Path, max_chars: int = SPECS_SUMMARY_CHARS) -> str | None:
    """Concatenate the markdown files in ``specs/`` up to *max_chars*.

    Files are read in name order and joined with ``---``. Once less than
    100 characters of room remain, the rest are replaced by a count. Returns
    ``None`` when there is no ``specs/`` directory or it holds no markdown.
    """
    specs_dir = Path(cwd) / SPECS_DIRNAME
    if not specs_dir.is_dir():
        return None
    files = sorted(p for p in specs_dir.iterdir() if p.suffix == ".md" and p.is_file())
    if not files:
        return None

    parts: list[str] = []
    used = 0
    for path in files:
        room = max_chars - used
        if room <= 100:
            parts.append(f"[{len(files) - len(parts)} more spec file(s) omitted]")
            break
        content = read_text_lenient(path).strip()
        if len(content) > room:
            content = content[:room] + "\n[... truncated ...]"
        parts.append(content)
        used += len(content)
    return "\n---\n".join(parts)


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------

def _preamble(ctx: RoundContext) -> str:
    lines = [
        "You are a coding agent working in an automated development loop "
        f"(iteration {ctx.iteration}/{ctx.max_iterations}).",
        "",
        "Rules:",
        "- Work on one task at a time and keep changes focused.",
        "- Run the project's checks before you finish when you can.",
        f"- Tick finished items in {PLAN_FILENAME} by changing [ ] to [x].",
        "- If you cannot continue without help, say TASK BLOCKED and explain why.",
    ]
    if ctx.completion_token:
        lines.append(f"- When every task is done, output {ctx.completion_token} on its own line.")
    else:
        lines.append("- When every task is done, output <promise>COMPLETE</promise>.")
    return "\n".join(lines)


def _task_detail(ctx: RoundContext) -> str:
    task = current_task(ctx.ledger)
    if task is None:
        return ""
    lines = [f"## Current Task ({task.index + 1}/{ctx.ledger.total}): {task.name}"]
    lines.extend(f"- [{'x' if s.completed else ' '}] {s.name}" for s in task.subtasks)
    return "\n".join(lines)


def _plan_progress(ctx: RoundContext) -> str:
    """Compact 'N done, current task, N remaining' block."""
    ledger = ctx.ledger
    task = current_task(ledger)
    if task is None:
        return f"> All {ledger.total} task(s) in {PLAN_FILENAME} are complete."
    lines = []
    if ledger.completed:
        lines.append(f"> {ledger.completed} task(s) already completed.")
    lines.append("")
    lines.append(_task_detail(ctx))
    remaining = ledger.pending - 1
    if remaining > 0:
        lines.append("")
        lines.append(f"> {remaining} more task(s) remaining after this one.")
    return "\n".join(lines).strip()


def _feedback(feedback: str | None, max_chars: int) -> str:
    if not feedback:
        return ""
    return compress_feedback(feedback, max_chars)


def _recent(ctx: RoundContext, limit: int) -> str:
    if not ctx.recent_rounds or limit <= 0:
        return ""
    lines = ["## Previous Iterations"]
    lines.extend(f"- {entry}" for entry in ctx.recent_rounds[-limit:])
    return "\n".join(lines)


def _plan_or_reminder(ctx: RoundContext) -> str:
    if ctx.ledger.has_tasks:
        return _plan_progress(ctx)
    return (
        f"If you haven't already, create {PLAN_FILENAME} with structured tasks "
        "as checkbox items, then work through them one at a time."
    )


def _specs(ctx: RoundContext, max_chars: int | None = None) -> str:
    """Summary of ``specs/``, optionally cut to *max_chars* with a pointer to the files."""
    summary = ctx.specs_summary
    if not summary:
        return ""
    if max_chars is not None and len(summary) > max_chars:
        summary = summary[:max_chars] + f"\n[... see {SPECS_DIRNAME}/ for full details ...]"
    return f"## Specs Summary\n\n{summary}"


def _full_fragments(ctx: RoundContext) -> list[str]:
    return [
        _preamble(ctx),
        f"## Task\n\n{ctx.task.strip()}",
        _task_detail(ctx),
        _feedback(ctx.validation_feedback, FULL_FEEDBACK_CHARS),
    ]


def _abbreviated_fragments(ctx: RoundContext) -> list[str]:
    return [
        _preamble(ctx),
        f"## Task Summary\n\n{summarize_task(ctx.task, ABBREVIATED_SUMMARY_CHARS)}",
        _specs(ctx),
        _plan_or_reminder(ctx),
        _recent(ctx, 3),
        _feedback(ctx.validation_feedback, ABBREVIATED_FEEDBACK_CHARS),
    ]


def _minimal_fragments(ctx: RoundContext) -> list[str]:
    return [
        _preamble(ctx),
        f"## Task Summary\n\n{summarize_task(ctx.task, MINIMAL_SUMMARY_CHARS)}",
        _specs(ctx, SPECS_HINT_CHARS),
        _plan_or_reminder(ctx),
        _recent(ctx, 1),
        _feedback(ctx.validation_feedback, MINIMAL_FEEDBACK_CHARS),
    ]


_TIER_BUILDERS: dict[RoundTier, Callable[[RoundContext], list[str]]] = {
    RoundTier.FULL: _full_fragments,
    RoundTier.ABBREVIATED: _abbreviated_fragments,
    RoundTier.MINIMAL: _minimal_fragments,
}


def build_context(
    iteration: int,
    max_iterations: int,
    task: str,
    ledger: TaskLedgerSnapshot,
    validation_feedback: str | None = None,
    token_budget: int = DEFAULT_TOKEN_BUDGET,
    *,
    completion_token: str | None = None,
    prompt_prefix: str | None = None,
    recent_rounds: Sequence[str] = (),
    specs_summary: str | None = None,
) -> BuiltContext:
    """Render the prompt for *iteration* and fit it to *token_budget*."""
    ctx = RoundContext(
        iteration=iteration,
        max_iterations=max_iterations,
        task=task,
        ledger=ledger,
        validation_feedback=validation_feedback,
        completion_token=completion_token,
        prompt_prefix=prompt_prefix,
        recent_rounds=tuple(recent_rounds),
        specs_summary=specs_summary,
    )
    tier = tier_for_iteration(iteration)
    fragments = _TIER_BUILDERS[tier](ctx)
    if prompt_prefix:
        fragments.insert(0, prompt_prefix.strip())
    prompt = "\n\n".join(f for f in fragments if f and f.strip())
    fitted = truncate_to_budget(prompt, token_budget)
    return BuiltContext(
        prompt=fitted,
        tier=tier,
        estimated_tokens=estimate_tokens(fitted),
        was_truncated=fitted != prompt,
    )
