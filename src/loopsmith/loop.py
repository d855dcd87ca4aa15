"""Iteration controller.

:class:`IterationLoop` drives an agent through strictly sequential rounds.
Each round passes through the backpressure checks, builds a prompt, invokes
the agent, classifies the output, validates the working tree, and either
continues or stops with exactly one :class:`ExitReason`.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from loopsmith.agent_runner import AgentRunner, OutputLineCallback
from loopsmith.agents import create_agent
from loopsmith.circuit_breaker import CircuitBreaker
from loopsmith.completion import (
    Classification,
    Verdict,
    block_hint,
    classify,
    classify_block,
)
from loopsmith.config import LoopConfig
from loopsmith.context_builder import build_context, build_specs_summary, estimate_tokens
from loopsmith.cost import CostTracker
from loopsmith.git_tools import (
    GitError,
    commit_all,
    create_pull_request,
    ensure_git_identity,
    generate_commit_message,
    is_git_repo,
    push,
)
from loopsmith.progress import ProgressLog, check_file_completion
from loopsmith.rate_limiter import RateLimiter
from loopsmith.schemas import (
    SUCCESSFUL_EXIT_REASONS,
    ExitReason,
    IterationRecord,
    IterationStatus,
    LoopResult,
    LoopStats,
    RunResult,
    SessionState,
    ValidationCommand,
    ValidationResult,
    utc_now_iso,
)
from loopsmith.session import SessionStore
from loopsmith.task_ledger import (
    TaskLedgerSnapshot,
    current_task,
    estimate_max_iterations,
    load_ledger,
    regrow_budget,
)
from loopsmith.validation import (
    ValidationRunner,
    detect_validation_commands,
    format_validation_feedback,
    select_commands,
)
from loopsmith.workspace import has_changed, take_snapshot

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FINAL_ROUND_EXTENSION = 2
"""Extra rounds granted once when validation fails on the final round."""

STALL_MIN_ITERATION = 3
"""Idle-streak stops are only considered after this many rounds."""

SMALL_PLAN_PENDING = 5
STALL_THRESHOLD_SMALL_PLAN = 3
STALL_THRESHOLD_LARGE_PLAN = 4
RECENT_ROUNDS_KEPT = 5


class Validator(Protocol):
    def run(self, cwd: str | Path, commands: Sequence[ValidationCommand]) -> list[ValidationResult]: ...


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------

def stall_threshold(pending_tasks: int) -> int:
    """Idle rounds tolerated before a graceful stop."""
    if pending_tasks <= SMALL_PLAN_PENDING:
        return STALL_THRESHOLD_SMALL_PLAN
    return STALL_THRESHOLD_LARGE_PLAN


def is_final_round(
    iteration: int,
    max_iterations: int,
    ledger: TaskLedgerSnapshot,
    verdict: Verdict,
) -> bool:
    """The round after which the loop expects to stop.

    That is the last allowed iteration, a plan with nothing pending, or
    (for plan-less runs) a round the agent declared done.
    """
    if iteration >= max_iterations:
        return True
    if ledger.has_tasks:
        return ledger.pending == 0
    return verdict is Verdict.DONE


def describe_exit(result: LoopResult) -> str:
    """One human-readable line per exit reason."""
    reason = result.exit_reason
    if reason is ExitReason.COMPLETED:
        return f"Task completed after {result.iterations} iteration(s)."
    if reason is ExitReason.FILE_SIGNAL:
        return "Completion signalled through the plan or a sentinel file."
    if reason is ExitReason.BLOCKED:
        detail = f": {result.error}" if result.error else ""
        return f"Agent is blocked ({result.block_kind or 'generic'}){detail}"
    if reason is ExitReason.MAX_ITERATIONS:
        return f"Reached the iteration limit ({result.iterations}) without completion."
    if reason is ExitReason.CIRCUIT_BREAKER:
        return f"Stopped by the circuit breaker: {result.error or 'too many failures'}."
    if reason is ExitReason.RATE_LIMIT:
        return "Stopped: call rate limit reached and no slot freed within the wait budget."
    if reason is ExitReason.COST_CEILING:
        return "Stopped: cost ceiling reached."
    if reason is ExitReason.PAUSED:
        return "Paused; run 'loopsmith resume' to continue."
    return f"Stopped on an unexpected error: {result.error}"


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class _Stop:
    reason: ExitReason
    error: str | None = None
    block_kind: str | None = None


@dataclass(slots=True)
class _RunState:
    iteration: int
    max_iterations: int
    known_task_total: int
    started: float = field(default_factory=time.monotonic)
    prior_duration: float = 0.0
    validation_feedback: str | None = None
    extension_granted: bool = False
    idle_streak: int = 0
    validation_failures: int = 0
    agent_failures: int = 0
    commits: list[str] = field(default_factory=list)
    records: list[IterationRecord] = field(default_factory=list)
    recent: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------------

class IterationLoop:
    """Drive an agent in rounds until the task is done or a budget runs out.

    Parameters
    ----------
    repo_path:
        Working directory the agent edits.
    config:
        Validated :class:`LoopConfig`.
    agent:
        Agent runner; built from ``config.agent`` when omitted.
    validator:
        Object with ``run(cwd, commands)``; a :class:`ValidationRunner` by
        default.
    cost_tracker, rate_limiter, circuit_breaker, session_store, progress_log:
        Collaborators, created from *config* when omitted. A rate limiter is
        only created when ``config.rate_limit`` is set.
    resume_session:
        A session already moved back to ``running``; the loop continues from
        its iteration count.
    use_git:
        Force git integration on or off; detected when ``None``.
    on_output_line:
        Receives each line of agent output as it streams.
    """

    def __init__(
        self,
        repo_path: str | Path,
        config: LoopConfig,
        *,
        agent: AgentRunner | None = None,
        validator: Validator | None = None,
        cost_tracker: CostTracker | None = None,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        session_store: SessionStore | None = None,
        progress_log: ProgressLog | None = None,
        resume_session: SessionState | None = None,
        use_git: bool | None = None,
        on_output_line: OutputLineCallback | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        if not self.repo_path.is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {self.repo_path}")

        self.config = config
        self.policy = config.completion_policy()
        self.agent = agent or create_agent(
            config.agent,
            timeout=config.agent_timeout_seconds,
            auto=config.auto,
            model=config.model,
        )
        self.validator: Validator = validator or ValidationRunner()
        self.cost_tracker = cost_tracker or CostTracker(config.model or None, config.max_cost)
        if rate_limiter is None and config.rate_limit:
            rate_limiter = RateLimiter(config.rate_limit)
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            config.circuit_breaker_failures,
            config.circuit_breaker_errors,
        )
        self.session_store = session_store or SessionStore(self.repo_path)
        self.progress_log = progress_log or ProgressLog(self.repo_path, enabled=config.track_progress)
        self.resume_session = resume_session
        self.use_git = is_git_repo(self.repo_path) if use_git is None else use_git
        self.on_output_line = on_output_line or _log_output_line
        self._validation_commands: list[ValidationCommand] | None = None

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self) -> LoopResult:
        """Run rounds until a terminal state; never raises after the session starts.

        Raises :class:`~loopsmith.session.SessionConflictError` when another
        session is active for this directory.
        """
        state = self._init_state()
        logger.info(
            "Starting loop: agent=%s, max_iterations=%d, cwd=%s",
            self.agent.name,
            state.max_iterations,
            self.repo_path,
        )
        try:
            stop = self._run_rounds(state)
        except KeyboardInterrupt:
            logger.warning("Interrupted; pausing session after iteration %d", state.iteration)
            stop = _Stop(ExitReason.PAUSED, "interrupted")
        except Exception as exc:
            logger.exception("Loop aborted by an unexpected error")
            stop = _Stop(ExitReason.ERROR, f"{type(exc).__name__}: {exc}")
        return self._finish(state, stop)

    # ------------------------------------------------------------------
    # Round sequence
    # ------------------------------------------------------------------

    def _run_rounds(self, state: _RunState) -> _Stop:
        while state.iteration < state.max_iterations:
            stop = self._check_before_round(state)
            if stop is not None:
                return stop
            stop = self._run_round(state, state.iteration + 1)
            if stop is not None:
                return stop
        return _Stop(ExitReason.MAX_ITERATIONS)

    def _check_before_round(self, state: _RunState) -> _Stop | None:
        if self.session_store.is_pause_requested():
            return _Stop(ExitReason.PAUSED, "pause requested")

        if self.circuit_breaker.is_tripped():
            return _Stop(ExitReason.CIRCUIT_BREAKER, self.circuit_breaker.trip_reason())

        if self.rate_limiter is not None:
            if self.rate_limiter.can_make_call():
                self.rate_limiter.record_call()
            else:
                logger.info("Rate limit reached; waiting up to %.0fs", self.config.rate_limit_max_wait_seconds)
                if not self.rate_limiter.wait_and_acquire(self.config.rate_limit_max_wait_seconds):
                    return _Stop(ExitReason.RATE_LIMIT, self.rate_limiter.format_stats())

        signal = check_file_completion(self.repo_path)
        if signal and state.validation_feedback is None:
            logger.info("Completion signal: %s", signal)
            return _Stop(ExitReason.FILE_SIGNAL)

        if self.cost_tracker.is_over_budget():
            return _Stop(ExitReason.COST_CEILING, self.cost_tracker.format_stats())
        return None

    def _run_round(self, state: _RunState, iteration: int) -> _Stop | None:
        round_start = time.monotonic()
        started_at = utc_now_iso()
        ledger = load_ledger(self.repo_path)
        if ledger.total > state.known_task_total:
            grown = regrow_budget(state.max_iterations, ledger.pending, self.config.hard_iteration_cap)
            if grown != state.max_iterations:
                logger.info(
                    "Plan grew to %d task(s); max iterations %d -> %d",
                    ledger.total,
                    state.max_iterations,
                    grown,
                )
            state.max_iterations = grown
        state.known_task_total = max(state.known_task_total, ledger.total)

        logger.info("=== Iteration %d / %d ===", iteration, state.max_iterations)
        context = build_context(
            iteration,
            state.max_iterations,
            self.config.task,
            ledger,
            state.validation_feedback,
            self.config.context_token_budget,
            completion_token=self.config.completion_token,
            prompt_prefix=self.config.prompt_prefix,
            recent_rounds=state.recent,
            specs_summary=build_specs_summary(self.repo_path),
        )

        before = take_snapshot(self.repo_path, use_git=self.use_git)
        run_result = self._invoke_agent(context.prompt)
        round_cost = self._record_cost(context.prompt, run_result)
        output = run_result.combined_text()
        if not run_result.success:
            state.agent_failures += 1

        verdict = classify(output, self.policy)
        logger.info("Verdict: %s %s", verdict.verdict.value, verdict.reason)
        if verdict.is_blocked:
            kind = classify_block(output)
            logger.warning("Agent blocked (%s): %s", kind.value, block_hint(kind))
            self._finalize_round(
                state, iteration, round_start, started_at, run_result, verdict,
                status=IterationStatus.BLOCKED, cost=round_cost,
            )
            return _Stop(ExitReason.BLOCKED, verdict.reason, kind.value)

        changed = has_changed(before, take_snapshot(self.repo_path, use_git=self.use_git))
        if verdict.is_done and not changed and iteration == 1:
            logger.info("Done on the first round without any change; continuing")
            verdict = Classification(Verdict.CONTINUE, "done claimed without changes", verdict.analysis)

        after = load_ledger(self.repo_path)
        progressed = after.completed > ledger.completed
        if changed or progressed or state.validation_feedback is not None:
            state.idle_streak = 0
        else:
            state.idle_streak += 1
        if iteration > STALL_MIN_ITERATION and state.idle_streak >= stall_threshold(after.pending):
            logger.warning("No progress for %d rounds; stopping", state.idle_streak)
            self._finalize_round(
                state, iteration, round_start, started_at, run_result, verdict,
                status=IterationStatus.PARTIAL, cost=round_cost,
            )
            return _Stop(ExitReason.COMPLETED, f"stalled for {state.idle_streak} rounds")

        if verdict.is_done and after.pending > 0:
            logger.info("Done claimed but %d task(s) still pending; continuing", after.pending)
            verdict = Classification(
                Verdict.CONTINUE, f"{after.pending} task(s) still pending", verdict.analysis
            )

        validation = self._validate(state, iteration, after, verdict.verdict)
        validation_failed = state.validation_feedback is not None
        if validation_failed and verdict.is_done:
            verdict = Classification(Verdict.CONTINUE, "validation failed", verdict.analysis)

        if validation_failed:
            tripped = self.circuit_breaker.record_failure(state.validation_feedback or "")
        elif not run_result.success:
            tripped = self.circuit_breaker.record_failure("\n".join(run_result.errors) or output[-500:])
        else:
            self.circuit_breaker.record_success()
            tripped = False

        commit_hash = self._commit(iteration, changed, ledger)

        if verdict.is_done:
            status = IterationStatus.COMPLETED
        elif validation_failed:
            status = IterationStatus.VALIDATION_FAILED
        elif not run_result.success:
            status = IterationStatus.FAILED
        else:
            status = IterationStatus.PARTIAL
        self._finalize_round(
            state, iteration, round_start, started_at, run_result, verdict,
            status=status, cost=round_cost, validation=validation,
            commit_hash=commit_hash, files_changed=changed,
        )

        if verdict.is_done:
            return _Stop(ExitReason.COMPLETED, None)
        if tripped:
            return _Stop(ExitReason.CIRCUIT_BREAKER, self.circuit_breaker.trip_reason())
        return None

    # ------------------------------------------------------------------
    # Round steps
    # ------------------------------------------------------------------

    def _invoke_agent(self, prompt: str) -> RunResult:
        try:
            return self.agent.run(
                self.repo_path,
                prompt,
                timeout_seconds=self.config.agent_timeout_seconds,
                on_output_line=self.on_output_line,
            )
        except OSError as exc:
            logger.error("%s could not be started: %s", self.agent.name, exc)
            return RunResult(errors=[f"{self.agent.name} failed to start: {exc}"])

    def _record_cost(self, prompt: str, run_result: RunResult) -> float:
        usage = run_result.usage
        if usage.input_tokens or usage.output_tokens:
            return self.cost_tracker.record_iteration(usage.input_tokens, usage.output_tokens)
        return self.cost_tracker.record_iteration(
            estimate_tokens(prompt), estimate_tokens(run_result.output)
        )

    def _commands(self) -> list[ValidationCommand]:
        if self._validation_commands is None:
            if self.config.validation_commands is not None:
                self._validation_commands = list(self.config.validation_commands)
            else:
                self._validation_commands = detect_validation_commands(self.repo_path)
            logger.info(
                "Validation commands: %s",
                ", ".join(c.command for c in self._validation_commands) or "(none)",
            )
        return self._validation_commands

    def _validate(
        self,
        state: _RunState,
        iteration: int,
        ledger: TaskLedgerSnapshot,
        verdict: Verdict,
    ) -> list[ValidationResult] | None:
        """Run the tier of checks due this round and update pending feedback."""
        if not self.config.validate_changes or iteration <= self.config.warmup_iterations:
            state.validation_feedback = None
            return None
        final = is_final_round(iteration, state.max_iterations, ledger, verdict)
        commands = select_commands(self._commands(), final_round=final)
        if not commands:
            state.validation_feedback = None
            return None

        results = self.validator.run(self.repo_path, commands)
        state.validation_feedback = format_validation_feedback(results)
        if state.validation_feedback is None:
            return results

        state.validation_failures += 1
        logger.warning("Validation failed: %s", ", ".join(r.command for r in results if not r.success))
        if final and not state.extension_granted:
            state.extension_granted = True
            extended = min(self.config.hard_iteration_cap, state.max_iterations + FINAL_ROUND_EXTENSION)
            state.max_iterations = max(state.max_iterations, extended)
            logger.info("Final-round validation failed; extending to %d iterations", state.max_iterations)
        return results

    def _commit(self, iteration: int, changed: bool, ledger: TaskLedgerSnapshot) -> str | None:
        if not (self.config.commit and changed and self.use_git):
            return None
        task = current_task(ledger)
        message = generate_commit_message(iteration, self.config.task, task.name if task else None)
        try:
            ensure_git_identity(self.repo_path)
            sha = commit_all(self.repo_path, message)
        except GitError as exc:
            logger.warning("Auto-commit failed: %s", exc)
            return None
        if sha:
            logger.info("Committed %s", sha)
        return sha

    def _finalize_round(
        self,
        state: _RunState,
        iteration: int,
        round_start: float,
        started_at: str,
        run_result: RunResult,
        verdict: Classification,
        *,
        status: IterationStatus,
        cost: float | None = None,
        validation: list[ValidationResult] | None = None,
        commit_hash: str | None = None,
        files_changed: bool = False,
    ) -> IterationRecord:
        summary = _first_line(run_result.final_message or run_result.output, 200)
        record = IterationRecord(
            index=iteration,
            started_at=started_at,
            agent_output=run_result.combined_text(),
            verdict=verdict.verdict.value,
            verdict_reason=verdict.reason,
            status=status,
            summary=summary,
            validation=validation,
            committed=commit_hash is not None,
            commit_hash=commit_hash,
            files_changed=files_changed,
            cost_usd=cost,
            duration_ms=int((time.monotonic() - round_start) * 1000),
        )
        state.iteration = iteration
        state.records.append(record)
        if commit_hash:
            state.commits.append(commit_hash)
        state.recent.append(f"Iteration {iteration} ({status.value}): {summary or 'no summary'}")
        del state.recent[:-RECENT_ROUNDS_KEPT]
        self.progress_log.append_entry(record, task=self.config.task)
        self._save_session(state)
        return record

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _init_state(self) -> _RunState:
        ledger = load_ledger(self.repo_path)
        session = self.resume_session
        if session is not None:
            logger.info("Resuming session %s at iteration %d", session.id, session.iteration)
            state = _RunState(
                iteration=session.iteration,
                max_iterations=session.max_iterations,
                known_task_total=ledger.total,
                commits=list(session.commits),
                prior_duration=session.stats.total_duration_seconds,
            )
            self.circuit_breaker.reset()
        else:
            max_iterations = self.config.max_iterations or estimate_max_iterations(ledger, self.config.task)
            self.session_store.create(
                self.config.task,
                max_iterations=max_iterations,
                agent=self.config.agent,
                options=self.config.session_options(),
            )
            state = _RunState(
                iteration=0,
                max_iterations=max_iterations,
                known_task_total=ledger.total,
            )
        return state

    def _save_session(self, state: _RunState) -> None:
        session = self.session_store.load()
        if session is None:
            return
        session.iteration = state.iteration
        session.max_iterations = state.max_iterations
        session.commits = list(state.commits)
        elapsed = time.monotonic() - state.started
        session.stats.total_duration_seconds = state.prior_duration + elapsed
        session.stats.validation_failures = state.validation_failures
        cost = self.cost_tracker.stats()
        session.stats.total_cost_usd = cost["total_cost"]
        session.stats.total_tokens = cost["total_tokens"]
        self.session_store.save(session)

    def _publish(self, state: _RunState) -> None:
        if not (self.config.push and self.use_git and state.commits):
            return
        try:
            push(self.repo_path)
            if self.config.pull_request:
                url = create_pull_request(
                    self.repo_path,
                    title=f"loopsmith: {_first_line(self.config.task, 60)}",
                    body=_pull_request_body(self.config.task, state),
                )
                logger.info("Opened pull request %s", url)
        except GitError as exc:
            logger.warning("Publishing changes failed: %s", exc)

    def _finish(self, state: _RunState, stop: _Stop) -> LoopResult:
        if stop.reason in SUCCESSFUL_EXIT_REASONS or stop.reason is ExitReason.MAX_ITERATIONS:
            self._publish(state)
        self._save_session(state)
        try:
            self.session_store.complete(stop.reason, stop.error)
        except (OSError, RuntimeError) as exc:
            logger.warning("Could not record session outcome: %s", exc)

        elapsed = time.monotonic() - state.started
        result = LoopResult(
            success=stop.reason in SUCCESSFUL_EXIT_REASONS,
            iterations=state.iteration,
            commits=list(state.commits),
            exit_reason=stop.reason,
            error=stop.error,
            block_kind=stop.block_kind,
            records=list(state.records),
            stats=LoopStats(
                total_duration_seconds=elapsed,
                average_iteration_seconds=elapsed / len(state.records) if state.records else 0.0,
                validation_failures=state.validation_failures,
                agent_failures=state.agent_failures,
                idle_streak=state.idle_streak,
                final_max_iterations=state.max_iterations,
                circuit_breaker=self.circuit_breaker.stats(),
                rate_limiter=self.rate_limiter.stats() if self.rate_limiter else {},
                cost=self.cost_tracker.stats(),
            ),
        )
        logger.info("Loop finished: %s (%d iteration(s))", stop.reason.value, state.iteration)
        return result


def _first_line(text: str, max_len: int) -> str:
    for line in (text or "").splitlines():
        line = line.strip()
        if line:
            return line if len(line) <= max_len else line[: max_len - 3] + "..."
    return ""


def _pull_request_body(task: str, state: _RunState) -> str:
    lines = [
        "Automated changes from a loopsmith run.",
        "",
        f"**Task:** {_first_line(task, 200)}",
        f"**Iterations:** {state.iteration}",
        f"**Commits:** {len(state.commits)}",
    ]
    return "\n".join(lines)


def _log_output_line(line: str) -> None:
    logger.debug("agent | %s", line)
