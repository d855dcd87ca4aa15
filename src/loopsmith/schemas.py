"""Pydantic models for structured data shared across the loop."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Agent run results
# ---------------------------------------------------------------------------

class EventKind(str, Enum):
    """Normalized event types parsed from agent stdout."""

    AGENT_MESSAGE = "agent_message"
    FILE_CHANGE = "file_change"
    COMMAND_EXEC = "command_exec"
    TURN_COMPLETED = "turn.completed"
    ERROR = "error"
    TEXT = "text"
    UNKNOWN = "unknown"


class AgentEvent(BaseModel):
    """A single parsed line of agent output."""

    kind: EventKind = EventKind.UNKNOWN
    raw: dict[str, Any] = Field(default_factory=dict)
    text: str | None = None


class UsageInfo(BaseModel):
    """Token usage reported by an agent, when it reports any."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    model: str | None = None


class RunResult(BaseModel):
    """Aggregated result of one agent invocation."""

    success: bool = False
    exit_code: int = -1
    output: str = ""
    final_message: str = ""
    events: list[AgentEvent] = Field(default_factory=list)
    usage: UsageInfo = Field(default_factory=UsageInfo)
    errors: list[str] = Field(default_factory=list)
    timed_out: bool = False
    duration_seconds: float = 0.0

    def combined_text(self) -> str:
        """Return output plus error text, the input the classifier sees."""
        parts = [self.output.strip(), *(e.strip() for e in self.errors)]
        return "\n".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationTier(str, Enum):
    """Cost class of a validation command."""

    FAST = "fast"
    FULL = "full"


class ValidationCommand(BaseModel):
    """A named shell command used to validate the working tree."""

    name: str
    command: str
    tier: ValidationTier = ValidationTier.FULL


class ValidationResult(BaseModel):
    """Outcome of running one validation command."""

    command: str
    success: bool
    output: str = ""
    error: str | None = None
    duration_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Loop results
# ---------------------------------------------------------------------------

class ExitReason(str, Enum):
    """Terminal reason for a run; exactly one per run."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    MAX_ITERATIONS = "max_iterations"
    CIRCUIT_BREAKER = "circuit_breaker"
    RATE_LIMIT = "rate_limit"
    FILE_SIGNAL = "file_signal"
    COST_CEILING = "cost_ceiling"
    PAUSED = "paused"
    ERROR = "error"


SUCCESSFUL_EXIT_REASONS = frozenset({ExitReason.COMPLETED, ExitReason.FILE_SIGNAL})


class IterationStatus(str, Enum):
    """Status recorded for a round in the activity log."""

    STARTED = "started"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    BLOCKED = "blocked"
    VALIDATION_FAILED = "validation_failed"


class IterationRecord(BaseModel):
    """Finalized record of one round; immutable once built."""

    model_config = ConfigDict(frozen=True)

    index: int
    started_at: str = Field(default_factory=utc_now_iso)
    agent_output: str = ""
    verdict: str = "continue"
    verdict_reason: str = ""
    status: IterationStatus = IterationStatus.PARTIAL
    summary: str = ""
    validation: list[ValidationResult] | None = None
    committed: bool = False
    commit_hash: str | None = None
    files_changed: bool = False
    cost_usd: float | None = None
    duration_ms: int = 0


class LoopStats(BaseModel):
    """Aggregate statistics for a finished run."""

    total_duration_seconds: float = 0.0
    average_iteration_seconds: float = 0.0
    validation_failures: int = 0
    agent_failures: int = 0
    idle_streak: int = 0
    final_max_iterations: int = 0
    circuit_breaker: dict[str, Any] = Field(default_factory=dict)
    rate_limiter: dict[str, Any] = Field(default_factory=dict)
    cost: dict[str, Any] = Field(default_factory=dict)


class LoopResult(BaseModel):
    """Outcome of :meth:`loopsmith.loop.IterationLoop.run`."""

    success: bool = False
    iterations: int = 0
    commits: list[str] = Field(default_factory=list)
    exit_reason: ExitReason = ExitReason.MAX_ITERATIONS
    stats: LoopStats = Field(default_factory=LoopStats)
    error: str | None = None
    block_kind: str | None = None
    records: list[IterationRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Session persistence
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    """Lifecycle state of a persisted session."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStats(BaseModel):
    """Running totals stored with the session."""

    total_duration_seconds: float = 0.0
    validation_failures: int = 0
    total_cost_usd: float = 0.0
    total_tokens: int = 0


class SessionState(BaseModel):
    """Durable snapshot of a run, written to ``.loopsmith/session.json``."""

    id: str
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    status: SessionStatus = SessionStatus.RUNNING
    iteration: int = 0
    max_iterations: int = 0
    task: str = ""
    cwd: str = ""
    agent: str = ""
    options: dict[str, Any] = Field(default_factory=dict)
    commits: list[str] = Field(default_factory=list)
    stats: SessionStats = Field(default_factory=SessionStats)
    pause_reason: str | None = None
    exit_reason: ExitReason | None = None
    error: str | None = None
