"""Durable, resumable session snapshot for a working directory."""

from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from loopsmith.file_io import STATE_DIRNAME, atomic_write_text
from loopsmith.schemas import (
    SUCCESSFUL_EXIT_REASONS,
    ExitReason,
    SessionState,
    SessionStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

SESSION_FILENAME = "session.json"
_ACTIVE_STATUSES = frozenset({SessionStatus.RUNNING, SessionStatus.PAUSED})
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class SessionError(RuntimeError):
    """Raised for invalid session transitions."""


class SessionConflictError(SessionError):
    """Raised when a run starts while another session is still active."""


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_session_id(prefix: str = "ls") -> str:
    """Return ``<prefix>-<base36 millis>-<random>``."""
    return f"{prefix}-{_base36(int(time.time() * 1000))}-{secrets.token_hex(3)}"


class SessionStore:
    """Load and save the single session file under ``.loopsmith/``.

    Every write replaces the whole file atomically.
    """

    def __init__(self, cwd: str | Path) -> None:
        self.cwd = Path(cwd).resolve()
        self.path = self.cwd / STATE_DIRNAME / SESSION_FILENAME

    # -- persistence --

    def load(self) -> SessionState | None:
        """Return the stored session, or ``None`` when absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
            if not raw.strip():
                logger.warning("Session file is empty; ignoring: %s", self.path)
                return None
            return SessionState.model_validate_json(raw)
        except (OSError, ValidationError) as exc:
            logger.warning("Could not load session file %s: %s", self.path, exc)
            return None

    def save(self, state: SessionState) -> SessionState:
        state.updated_at = utc_now_iso()
        atomic_write_text(self.path, state.model_dump_json(indent=2))
        return state

    def delete(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        return True

    # -- lifecycle --

    def create(
        self,
        task: str,
        *,
        max_iterations: int,
        agent: str = "",
        options: dict[str, Any] | None = None,
    ) -> SessionState:
        """Start a new running session.

        Raises :class:`SessionConflictError` if a running or paused session
        already exists for this directory.
        """
        existing = self.load()
        if is_active(existing):
            raise SessionConflictError(
                f"Session {existing.id} is still {existing.status.value}; "
                "resume it or clear it before starting a new run"
            )
        state = SessionState(
            id=generate_session_id(),
            task=task,
            cwd=str(self.cwd),
            agent=agent,
            max_iterations=max_iterations,
            options=dict(options or {}),
        )
        return self.save(state)

    def pause(self, reason: str | None = None) -> SessionState:
        state = self._require()
        if state.status is not SessionStatus.RUNNING:
            raise SessionError(f"Cannot pause a {state.status.value} session")
        state.status = SessionStatus.PAUSED
        state.pause_reason = reason
        state.exit_reason = ExitReason.PAUSED
        return self.save(state)

    def resume(self) -> SessionState:
        state = self._require()
        if state.status is not SessionStatus.PAUSED:
            raise SessionError(f"Cannot resume a {state.status.value} session")
        state.status = SessionStatus.RUNNING
        state.pause_reason = None
        state.exit_reason = None
        return self.save(state)

    def complete(self, exit_reason: ExitReason, error: str | None = None) -> SessionState:
        """Record the terminal outcome of a run."""
        state = self._require()
        state.exit_reason = exit_reason
        state.error = error
        if exit_reason is ExitReason.PAUSED:
            state.status = SessionStatus.PAUSED
        elif exit_reason in SUCCESSFUL_EXIT_REASONS:
            state.status = SessionStatus.COMPLETED
        else:
            state.status = SessionStatus.FAILED
        return self.save(state)

    def is_pause_requested(self) -> bool:
        """True when another process flipped the stored session to paused."""
        state = self.load()
        return state is not None and state.status is SessionStatus.PAUSED

    def _require(self) -> SessionState:
        state = self.load()
        if state is None:
            raise SessionError(f"No session found at {self.path}")
        return state


def is_active(state: SessionState | None) -> bool:
    return state is not None and state.status in _ACTIVE_STATUSES


def can_resume(state: SessionState | None) -> bool:
    return (
        state is not None
        and state.status is SessionStatus.PAUSED
        and state.iteration < state.max_iterations
    )


def remaining_iterations(state: SessionState) -> int:
    return max(0, state.max_iterations - state.iteration)


def format_summary(state: SessionState) -> str:
    """Multi-line human summary of *state*."""
    lines = [
        f"Session:    {state.id}",
        f"Status:     {state.status.value}",
        f"Iteration:  {state.iteration}/{state.max_iterations} ({remaining_iterations(state)} remaining)",
        f"Task:       {state.task[:80]}",
        f"Agent:      {state.agent or '-'}",
        f"Commits:    {len(state.commits)}",
        f"Updated:    {state.updated_at}",
    ]
    if state.pause_reason:
        lines.append(f"Paused:     {state.pause_reason}")
    if state.exit_reason:
        lines.append(f"Exit:       {state.exit_reason.value}")
    if state.error:
        lines.append(f"Error:      {state.error}")
    if state.stats.total_cost_usd:
        lines.append(f"Cost:       ${state.stats.total_cost_usd:.4f}")
    return "\n".join(lines)
