"""Validation commands: detection, execution, and feedback text."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import time
from collections.abc import Sequence
from pathlib import Path

from loopsmith.file_io import read_text_lenient
from loopsmith.schemas import ValidationCommand, ValidationResult, ValidationTier

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300

KIND_TIERS: dict[str, ValidationTier] = {
    "lint": ValidationTier.FAST,
    "typecheck": ValidationTier.FAST,
    "test": ValidationTier.FULL,
    "build": ValidationTier.FULL,
}
_KIND_ORDER = ("lint", "typecheck", "test", "build")
_SHELL_OPERATORS_RE = re.compile(r"&&|\|\||[|;<>]")


def _agents_md_pattern(kind: str) -> re.Pattern[str]:
    return re.compile(rf"[-*]\s*\*{{0,2}}{kind}\*{{0,2}}[:\s]+`([^`]+)`", re.IGNORECASE)


def _strip_wrapping_quotes(token: str) -> str:
    if len(token) >= 2 and token[0] == token[-1] and token[0] in {'"', "'"}:
        return token[1:-1]
    return token


def parse_command(command: str | Sequence[str] | None) -> list[str] | None:
    """Split a command string into argv tokens; ``None`` for blank input."""
    if command is None:
        return None
    if not isinstance(command, str):
        cleaned = [str(part).strip() for part in command if part is not None and str(part).strip()]
        return cleaned or None
    raw = command.strip()
    if not raw:
        return None
    try:
        if os.name == "nt":
            parts = [_strip_wrapping_quotes(p) for p in shlex.split(raw, posix=False)]
        else:
            parts = shlex.split(raw, posix=True)
    except ValueError:
        logger.warning("Could not parse command %r with shell quoting; splitting on whitespace.", raw)
        parts = raw.split()
    return [p for p in parts if p] or None


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def _from_agents_md(root: Path) -> dict[str, str]:
    text = read_text_lenient(root / "AGENTS.md")
    found: dict[str, str] = {}
    for kind in _KIND_ORDER:
        m = _agents_md_pattern(kind).search(text)
        if m:
            found[kind] = m.group(1).strip()
    return found


def _from_package_json(root: Path) -> dict[str, str]:
    path = root / "package.json"
    if not path.is_file():
        return {}
    try:
        scripts = json.loads(read_text_lenient(path)).get("scripts") or {}
    except (ValueError, AttributeError) as exc:
        logger.warning("Could not parse %s: %s", path, exc)
        return {}
    found: dict[str, str] = {}
    for kind in _KIND_ORDER:
        if kind in scripts:
            found[kind] = "npm test" if kind == "test" else f"npm run {kind}"
    return found


def _from_pyproject(root: Path) -> dict[str, str]:
    text = read_text_lenient(root / "pyproject.toml")
    if not text:
        return {}
    found: dict[str, str] = {}
    if "[tool.ruff" in text:
        found["lint"] = "ruff check ."
    if "[tool.mypy" in text:
        found["typecheck"] = "mypy ."
    if "[tool.pytest" in text or (root / "tests").is_dir():
        found["test"] = "python -m pytest -q"
    return found


def _from_makefile(root: Path) -> dict[str, str]:
    text = read_text_lenient(root / "Makefile")
    found: dict[str, str] = {}
    for kind in _KIND_ORDER:
        if re.search(rf"^{kind}\s*:", text, re.MULTILINE):
            found[kind] = f"make {kind}"
    return found


def detect_validation_commands(cwd: str | Path) -> list[ValidationCommand]:
    """Discover validation commands for the project at *cwd*.

    ``AGENTS.md`` bullets like ``- **lint**: `ruff check .` `` win; then
    ``package.json`` scripts, ``pyproject.toml`` tool sections, and
    ``Makefile`` targets fill in the remaining kinds.
    """
    root = Path(cwd)
    merged: dict[str, str] = {}
    for source in (_from_agents_md, _from_package_json, _from_pyproject, _from_makefile):
        for kind, command in source(root).items():
            merged.setdefault(kind, command)
    return [
        ValidationCommand(name=kind, command=merged[kind], tier=KIND_TIERS[kind])
        for kind in _KIND_ORDER
        if kind in merged
    ]


def select_commands(
    commands: Sequence[ValidationCommand],
    *,
    final_round: bool,
) -> list[ValidationCommand]:
    """Fast-tier commands on intermediate rounds, everything on the final one."""
    if final_round:
        return list(commands)
    return [c for c in commands if c.tier is ValidationTier.FAST]


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def _summarise_output(text: str, max_lines: int = 40) -> str:
    """Keep the head and tail of long command output."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    head = lines[:10]
    tail = lines[-(max_lines - 10):]
    skipped = len(lines) - max_lines
    return "\n".join([*head, f"  ... ({skipped} lines omitted) ...", *tail])


class ValidationRunner:
    """Run validation commands in order, stopping at the first failure.

    Parameters
    ----------
    timeout:
        Maximum seconds per command.
    """

    def __init__(self, timeout: int = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout

    def run(self, cwd: str | Path, commands: Sequence[ValidationCommand | str]) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        for item in commands:
            command = item.command if isinstance(item, ValidationCommand) else str(item)
            result = self.run_one(Path(cwd), command)
            results.append(result)
            if not result.success:
                break
        return results

    def run_one(self, cwd: Path, command: str) -> ValidationResult:
        logger.info("Validating: %s (cwd=%s)", command, cwd)
        use_shell = bool(_SHELL_OPERATORS_RE.search(command))
        argv: str | list[str] | None = command if use_shell else parse_command(command)
        if not argv:
            return ValidationResult(command=command, success=False, error="empty command")
        start = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                shell=use_shell,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            return ValidationResult(command=command, success=False, error=f"Command not found: {exc}")
        except subprocess.TimeoutExpired:
            return ValidationResult(
                command=command,
                success=False,
                error=f"Command timed out after {self.timeout}s",
                duration_seconds=time.monotonic() - start,
            )
        combined = ((proc.stdout or "") + "\n" + (proc.stderr or "")).strip()
        summary = _summarise_output(combined)
        elapsed = time.monotonic() - start
        if proc.returncode == 0:
            return ValidationResult(command=command, success=True, output=summary, duration_seconds=elapsed)
        return ValidationResult(
            command=command,
            success=False,
            output=summary,
            error=summary or f"exit status {proc.returncode}",
            duration_seconds=elapsed,
        )


def format_validation_feedback(results: Sequence[ValidationResult]) -> str | None:
    """Render failures as markdown sections, or ``None`` when all passed."""
    failures = [r for r in results if not r.success]
    if not failures:
        return None
    parts = ["## Validation Failed", ""]
    for result in failures:
        parts.append(f"### {result.command}")
        parts.append("```")
        parts.append((result.error or result.output or "failed").strip())
        parts.append("```")
        parts.append("")
    return "\n".join(parts).rstrip() + "\n"
