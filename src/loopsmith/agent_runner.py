"""Abstract base class and registry for coding-agent runners.

Every agent CLI (Claude Code, Codex, Cursor, OpenCode) implements the same
interface so the iteration loop can drive any of them interchangeably.
"""

from __future__ import annotations

import abc
import logging
import subprocess
from collections.abc import Callable
from pathlib import Path

from loopsmith.schemas import RunResult

logger = logging.getLogger(__name__)

OutputLineCallback = Callable[[str], None]


class AgentRunner(abc.ABC):
    """Common interface for coding-agent CLI wrappers.

    Subclasses implement :meth:`run`. Availability is checked at most once
    per instance and cached on it.
    """

    #: Human-readable name shown in summaries (e.g. "Claude Code").
    name: str = "base"
    #: Executable checked by :meth:`is_available`.
    binary: str = ""

    def __init__(self) -> None:
        self._available: bool | None = None

    @abc.abstractmethod
    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        timeout_seconds: int | None = None,
        on_output_line: OutputLineCallback | None = None,
    ) -> RunResult:
        """Execute one agent invocation and return its result.

        Parameters
        ----------
        repo_path:
            Working directory for the agent.
        prompt:
            The round prompt.
        timeout_seconds:
            Inactivity timeout override; ``None`` uses the runner default.
        on_output_line:
            Called with each line of output as it streams in.
        """

    def is_available(self) -> bool:
        """Return True when the agent CLI responds to ``--version``."""
        if self._available is None:
            self._available = self._check_binary()
        return self._available

    def _check_binary(self) -> bool:
        if not self.binary:
            return False
        try:
            result = subprocess.run(
                [self.binary, "--version"],
                capture_output=True,
                text=True,
                timeout=15,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("%s not available: %s", self.name, exc)
            return False
        return result.returncode == 0


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_REGISTRY: dict[str, type[AgentRunner]] = {}


def _normalize_key(key: str) -> str:
    return (key or "").strip().lower().replace("-", "_")


def register_agent(key: str, cls: type[AgentRunner]) -> None:
    """Register an agent runner class under a lookup key."""
    normalized_key = _normalize_key(key)
    if not normalized_key:
        raise ValueError("Agent key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, AgentRunner):
        raise TypeError("Registered agent must be an AgentRunner subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Agent '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def get_agent_class(key: str) -> type[AgentRunner]:
    """Look up a registered agent runner class; ``claude-code`` and ``claude_code`` match."""
    normalized_key = _normalize_key(key)
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown agent '{key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_agents() -> list[str]:
    """Return all registered agent keys."""
    return sorted(_REGISTRY)
