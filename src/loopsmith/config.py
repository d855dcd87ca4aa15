"""Run configuration: pydantic model, environment defaults, and presets."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from loopsmith.completion import CompletionPolicy
from loopsmith.presets import get_preset, project_presets_path
from loopsmith.schemas import ValidationCommand

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "claude_code"
DEFAULT_HARD_ITERATION_CAP = 50
DEFAULT_AGENT_TIMEOUT = 600
DEFAULT_RATE_LIMIT_WAIT_SECONDS = 60.0

_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "LOOPSMITH_AGENT": ("agent", str),
    "LOOPSMITH_MODEL": ("model", str),
    "LOOPSMITH_TIMEOUT": ("agent_timeout_seconds", int),
    "LOOPSMITH_MAX_COST": ("max_cost", float),
    "LOOPSMITH_RATE_LIMIT": ("rate_limit", int),
    "LOOPSMITH_TOKEN_BUDGET": ("context_token_budget", int),
}


class LoopConfig(BaseModel):
    """Everything one run of the iteration loop needs to know."""

    task: str = Field(min_length=1)
    max_iterations: int | None = Field(default=None, ge=1)
    hard_iteration_cap: int = Field(default=DEFAULT_HARD_ITERATION_CAP, ge=1)

    # agent
    agent: str = DEFAULT_AGENT
    model: str = ""
    auto: bool = False
    agent_timeout_seconds: int = Field(default=DEFAULT_AGENT_TIMEOUT, ge=0)

    # automation
    commit: bool = False
    push: bool = False
    pull_request: bool = False

    # validation
    validate_changes: bool = True
    validation_commands: list[ValidationCommand] | None = None
    warmup_iterations: int = Field(default=0, ge=0)

    # completion policy
    completion_token: str | None = None
    require_exit_signal: bool = False
    min_completion_indicators: int = Field(default=1, ge=1)

    # backpressure
    circuit_breaker_failures: int = Field(default=3, ge=1)
    circuit_breaker_errors: int = Field(default=5, ge=1)
    rate_limit: int | None = Field(default=None, ge=1)
    rate_limit_max_wait_seconds: float = Field(default=DEFAULT_RATE_LIMIT_WAIT_SECONDS, ge=0)
    max_cost: float = Field(default=0.0, ge=0)

    # prompt
    context_token_budget: int = Field(default=0, ge=0)
    prompt_prefix: str | None = None

    track_progress: bool = True
    preset: str | None = None

    @field_validator("task")
    @classmethod
    def _strip_task(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("task must not be blank")
        return stripped

    @field_validator("completion_token")
    @classmethod
    def _blank_token_is_none(cls, value: str | None) -> str | None:
        return value.strip() or None if value else None

    @model_validator(mode="after")
    def _automation_implies(self) -> LoopConfig:
        if self.pull_request:
            self.push = True
        if self.push:
            self.commit = True
        return self

    def completion_policy(self) -> CompletionPolicy:
        return CompletionPolicy(
            completion_token=self.completion_token,
            require_exit_signal=self.require_exit_signal,
            min_completion_indicators=self.min_completion_indicators,
        )

    def session_options(self) -> dict[str, Any]:
        """The subset of options worth persisting for ``resume``."""
        return self.model_dump(mode="json", exclude={"task"})


def env_defaults(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Read ``LOOPSMITH_*`` variables into config field values."""
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for var, (field_name, cast) in _ENV_FIELDS.items():
        raw = (env.get(var) or "").strip()
        if not raw:
            continue
        try:
            values[field_name] = cast(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: expected %s", var, raw, cast.__name__)
    return values


def build_config(
    explicit: dict[str, Any],
    *,
    preset: str | None = None,
    environ: dict[str, str] | None = None,
    cwd: str | Path | None = None,
) -> LoopConfig:
    """Layer defaults < environment < preset < *explicit* values.

    Presets defined in the project file under *cwd* are visible to *preset*.
    Raises ``KeyError`` for an unknown preset and pydantic's
    ``ValidationError`` (a ``ValueError``) for invalid values.
    """
    values = env_defaults(environ)
    if preset:
        extra = project_presets_path(cwd) if cwd is not None else None
        values.update(get_preset(preset, extra_path=extra).overrides())
        values["preset"] = preset
    values.update({k: v for k, v in explicit.items() if v is not None})
    return LoopConfig(**values)
