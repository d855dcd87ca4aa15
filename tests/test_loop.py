"""Scenario tests for the iteration controller with scripted collaborators."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import datetime as dt
import time

import pytest

import loopsmith.loop as loop_module
from loopsmith.agent_runner import AgentRunner
from loopsmith.circuit_breaker import CircuitBreaker
from loopsmith.completion import Verdict
from loopsmith.config import LoopConfig
from loopsmith.loop import IterationLoop, describe_exit, is_final_round, stall_threshold
from loopsmith.progress import COMPLETE_SENTINEL
from loopsmith.rate_limiter import RateLimiter
from loopsmith.schemas import (
    ExitReason,
    IterationStatus,
    LoopResult,
    RunResult,
    SessionStatus,
    UsageInfo,
    ValidationCommand,
    ValidationResult,
    ValidationTier,
    utc_now_iso,
)
from loopsmith.session import SessionConflictError, SessionStore
from loopsmith.task_ledger import EMPTY_LEDGER, parse_plan
from loopsmith.workspace import take_snapshot

pytestmark = pytest.mark.integration

Step = Callable[[Path, int], "str | RunResult"]


class ScriptedAgent(AgentRunner):
    """Plays back one step per round; the last step repeats."""

    name = "scripted"
    binary = "scripted"

    def __init__(self, *steps: Step) -> None:
        super().__init__()
        self.steps = list(steps)
        self.prompts: list[str] = []

    def run(self, repo_path, prompt, *, timeout_seconds=None, on_output_line=None) -> RunResult:
        self.prompts.append(prompt)
        n = len(self.prompts)
        step = self.steps[min(n, len(self.steps)) - 1]
        result = step(Path(repo_path), n)
        if isinstance(result, RunResult):
            return result
        return RunResult(success=True, exit_code=0, output=result, final_message=result)


class FakeValidator:
    def __init__(self, *outcomes: bool, error: str = "E501 line too long") -> None:
        self.outcomes = list(outcomes) or [True]
        self.error = error
        self.calls: list[list[str]] = []

    def run(self, cwd, commands):
        self.calls.append([c.command for c in commands])
        ok = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        return [ValidationResult(command=c.command, success=ok, error=None if ok else self.error) for c in commands]


def edit(text: str) -> Step:
    def _step(repo: Path, n: int) -> str:
        (repo / f"work_{n}.txt").write_text(f"round {n}\n", encoding="utf-8")
        return text

    return _step


def say(text: str) -> Step:
    return lambda repo, n: text


def write_plan_step(text: str, *tasks: tuple[str, bool]) -> Step:
    def _step(repo: Path, n: int) -> str:
        lines = [f"- [{'x' if done else ' '}] {name}" for name, done in tasks]
        (repo / "IMPLEMENTATION_PLAN.md").write_text("\n".join(lines) + "\n", encoding="utf-8")
        return text

    return _step


LINT = [ValidationCommand(name="lint", command="ruff check .", tier=ValidationTier.FAST)]


def make_loop(tmp_path: Path, agent: AgentRunner, **kwargs) -> IterationLoop:
    injected = {"validator", "rate_limiter", "circuit_breaker", "resume_session"}
    collaborators = {k: kwargs.pop(k) for k in list(kwargs) if k in injected}
    options = {"task": "Build the parser", "validate_changes": False, "max_iterations": 5, **kwargs}
    return IterationLoop(tmp_path, LoopConfig(**options), agent=agent, use_git=False, **collaborators)


# ---------------------------------------------------------------------------
# Required scenarios
# ---------------------------------------------------------------------------


def test_completes_when_agent_finishes_plan(tmp_path: Path, write_plan):
    write_plan(("tokenizer", False), ("grammar", False))
    agent = ScriptedAgent(
        edit("Working on the tokenizer"),
        write_plan_step("Both done\nSHIP_IT", ("tokenizer", True), ("grammar", True)),
    )
    result = make_loop(tmp_path, agent, completion_token="SHIP_IT").run()

    assert result.exit_reason is ExitReason.COMPLETED
    assert result.success
    assert result.iterations == 2
    assert [r.status for r in result.records] == [IterationStatus.PARTIAL, IterationStatus.COMPLETED]


def test_blocked_on_first_round(tmp_path: Path):
    agent = ScriptedAgent(say("TASK BLOCKED: I need an API key to continue"))
    result = make_loop(tmp_path, agent).run()

    assert result.exit_reason is ExitReason.BLOCKED
    assert not result.success
    assert result.iterations == 1
    assert result.block_kind == "generic"
    assert result.records[0].status is IterationStatus.BLOCKED


def test_circuit_breaker_after_three_failed_validations(tmp_path: Path):
    agent = ScriptedAgent(edit("Updated the module"))
    validator = FakeValidator(False)
    result = make_loop(
        tmp_path,
        agent,
        validator=validator,
        validate_changes=True,
        validation_commands=LINT,
        max_iterations=10,
    ).run()

    assert result.exit_reason is ExitReason.CIRCUIT_BREAKER
    assert result.iterations == 3
    assert len(validator.calls) == 3
    assert result.stats.validation_failures == 3
    assert "3 consecutive failures" in result.error


def test_rate_limit_stops_second_round(tmp_path: Path):
    limiter = RateLimiter(1, clock=lambda: 1000.0, sleep=lambda s: pytest.fail("must not sleep"))
    agent = ScriptedAgent(edit("Updated the module"))
    result = make_loop(tmp_path, agent, rate_limiter=limiter, max_iterations=5).run()

    assert result.exit_reason is ExitReason.RATE_LIMIT
    assert result.iterations == 1
    assert len(agent.prompts) == 1
    assert result.stats.rate_limiter["calls_this_hour"] == 1


def test_budget_grows_when_plan_expands(tmp_path: Path, write_plan):
    write_plan(("a", False), ("b", False), ("c", False))
    bigger = [(name, False) for name in "abcdefgh"]
    agent = ScriptedAgent(
        write_plan_step("Split the work into smaller tasks", *bigger),
        say("TASK BLOCKED: waiting on review"),
    )
    result = make_loop(tmp_path, agent, max_iterations=10).run()

    assert result.stats.final_max_iterations >= 11
    assert result.iterations == 2


# ---------------------------------------------------------------------------
# Round policy
# ---------------------------------------------------------------------------


def test_file_signal_before_any_round(tmp_path: Path):
    (tmp_path / COMPLETE_SENTINEL).write_text("", encoding="utf-8")
    agent = ScriptedAgent(say("unused"))
    result = make_loop(tmp_path, agent).run()

    assert result.exit_reason is ExitReason.FILE_SIGNAL
    assert result.success
    assert result.iterations == 0
    assert agent.prompts == []


def test_ticked_plan_is_a_file_signal(tmp_path: Path, write_plan):
    write_plan(("a", False))
    agent = ScriptedAgent(write_plan_step("Ticked the box", ("a", True)))
    result = make_loop(tmp_path, agent).run()

    assert result.exit_reason is ExitReason.FILE_SIGNAL
    assert result.iterations == 1


def test_file_signal_waits_for_validation_to_pass(tmp_path: Path, write_plan):
    write_plan(("a", False))
    agent = ScriptedAgent(write_plan_step("Ticked the box", ("a", True)))
    validator = FakeValidator(False, True)
    result = make_loop(
        tmp_path,
        agent,
        validator=validator,
        validate_changes=True,
        validation_commands=LINT,
    ).run()

    assert result.exit_reason is ExitReason.FILE_SIGNAL
    assert result.iterations == 2
    assert len(agent.prompts) == 2
    assert "## Validation Failed" in agent.prompts[1]
    assert result.records[0].status is IterationStatus.VALIDATION_FAILED


def test_failed_validation_is_not_an_idle_round(tmp_path: Path):
    agent = ScriptedAgent(say("Thinking about the approach"))
    result = make_loop(
        tmp_path,
        agent,
        validator=FakeValidator(False),
        validate_changes=True,
        validation_commands=LINT,
        max_iterations=6,
        circuit_breaker_failures=10,
    ).run()

    assert result.exit_reason is ExitReason.MAX_ITERATIONS
    assert result.error is None
    assert result.iterations == result.stats.final_max_iterations == 8
    assert result.stats.idle_streak == 0


def test_done_without_changes_on_first_round_is_ignored(tmp_path: Path):
    agent = ScriptedAgent(
        say("<promise>COMPLETE</promise>"),
        edit("Really finished <promise>COMPLETE</promise>"),
    )
    result = make_loop(tmp_path, agent).run()

    assert result.exit_reason is ExitReason.COMPLETED
    assert result.iterations == 2
    assert result.records[0].verdict == Verdict.CONTINUE.value


def test_done_with_pending_tasks_continues(tmp_path: Path, write_plan):
    write_plan(("a", False), ("b", False))
    agent = ScriptedAgent(
        write_plan_step("<promise>COMPLETE</promise>", ("a", True), ("b", False)),
        write_plan_step("<promise>COMPLETE</promise>", ("a", True), ("b", True)),
    )
    result = make_loop(tmp_path, agent).run()

    assert result.iterations == 2
    assert result.exit_reason is ExitReason.COMPLETED
    assert "still pending" in result.records[0].verdict_reason


def test_stall_stops_gracefully(tmp_path: Path):
    agent = ScriptedAgent(say("Thinking about the approach"))
    result = make_loop(tmp_path, agent, max_iterations=10).run()

    assert result.exit_reason is ExitReason.COMPLETED
    assert result.success
    assert result.iterations == 4
    assert "stalled" in result.error


def test_max_iterations(tmp_path: Path):
    agent = ScriptedAgent(edit("Updated the module"))
    result = make_loop(tmp_path, agent, max_iterations=2).run()

    assert result.exit_reason is ExitReason.MAX_ITERATIONS
    assert not result.success
    assert result.iterations == 2


def test_custom_completion_token(tmp_path: Path):
    agent = ScriptedAgent(edit("Cannot proceed further, but SHIP_IT"))
    result = make_loop(tmp_path, agent, completion_token="SHIP_IT").run()

    assert result.exit_reason is ExitReason.COMPLETED
    assert result.iterations == 1


def test_validation_feedback_reaches_next_prompt_and_final_round_extends(tmp_path: Path):
    agent = ScriptedAgent(edit("Updated the module"))
    validator = FakeValidator(False)
    result = make_loop(
        tmp_path,
        agent,
        validator=validator,
        validate_changes=True,
        validation_commands=LINT,
        max_iterations=2,
        circuit_breaker_failures=10,
    ).run()

    assert "## Validation Failed" not in agent.prompts[0]
    assert "## Validation Failed" in agent.prompts[1]
    assert "E501 line too long" in agent.prompts[1]
    assert result.exit_reason is ExitReason.MAX_ITERATIONS
    assert result.stats.final_max_iterations == 4
    assert result.iterations == 4


def test_fast_tier_on_intermediate_rounds_full_on_final(tmp_path: Path):
    commands = LINT + [ValidationCommand(name="test", command="pytest", tier=ValidationTier.FULL)]
    agent = ScriptedAgent(edit("Updated the module"))
    validator = FakeValidator(True)
    make_loop(
        tmp_path,
        agent,
        validator=validator,
        validate_changes=True,
        validation_commands=commands,
        max_iterations=2,
    ).run()

    assert validator.calls == [["ruff check ."], ["ruff check .", "pytest"]]


def test_warmup_skips_validation(tmp_path: Path):
    validator = FakeValidator(True)
    make_loop(
        tmp_path,
        ScriptedAgent(edit("Updated the module")),
        validator=validator,
        validate_changes=True,
        validation_commands=LINT,
        warmup_iterations=1,
        max_iterations=2,
    ).run()

    assert len(validator.calls) == 1


def test_failed_validation_overrides_done(tmp_path: Path):
    agent = ScriptedAgent(edit("Finished <promise>COMPLETE</promise>"))
    validator = FakeValidator(False, True)
    result = make_loop(
        tmp_path,
        agent,
        validator=validator,
        validate_changes=True,
        validation_commands=LINT,
    ).run()

    assert result.iterations == 2
    assert result.exit_reason is ExitReason.COMPLETED
    assert result.records[0].status is IterationStatus.VALIDATION_FAILED


def test_agent_failures_trip_breaker(tmp_path: Path):
    failing = RunResult(success=False, exit_code=1, output="", errors=["segfault"])
    agent = ScriptedAgent(lambda repo, n: failing)
    result = make_loop(tmp_path, agent, max_iterations=10, circuit_breaker_failures=2).run()

    assert result.exit_reason is ExitReason.CIRCUIT_BREAKER
    assert result.iterations == 2
    assert result.stats.agent_failures == 2
    assert result.records[0].status is IterationStatus.FAILED


def test_cost_ceiling(tmp_path: Path):
    expensive = RunResult(
        success=True,
        exit_code=0,
        output="Updated the module",
        usage=UsageInfo(input_tokens=1_000_000, output_tokens=1_000_000),
    )

    def step(repo: Path, n: int) -> RunResult:
        edit("")(repo, n)
        return expensive

    result = make_loop(tmp_path, ScriptedAgent(step), max_cost=1.0).run()

    assert result.exit_reason is ExitReason.COST_CEILING
    assert result.iterations == 1
    assert result.stats.cost["total_cost"] == pytest.approx(18.0)


# ---------------------------------------------------------------------------
# Sessions, pause and errors
# ---------------------------------------------------------------------------


def test_session_and_activity_log_written(tmp_path: Path):
    agent = ScriptedAgent(edit("Updated <promise>COMPLETE</promise>"))
    make_loop(tmp_path, agent).run()

    state = SessionStore(tmp_path).load()
    assert state.status is SessionStatus.COMPLETED
    assert state.exit_reason is ExitReason.COMPLETED
    assert state.iteration == 1
    activity = (tmp_path / ".loopsmith" / "activity.md").read_text(encoding="utf-8")
    assert "### Iteration 1" in activity


def test_no_progress_flag_skips_activity_log(tmp_path: Path):
    make_loop(tmp_path, ScriptedAgent(edit("<promise>COMPLETE</promise>")), track_progress=False).run()
    assert not (tmp_path / ".loopsmith" / "activity.md").exists()


def test_pause_requested_between_rounds(tmp_path: Path):
    def pause_then_work(repo: Path, n: int) -> str:
        SessionStore(repo).pause("lunch")
        return edit("Updated the module")(repo, n)

    result = make_loop(tmp_path, ScriptedAgent(pause_then_work)).run()

    assert result.exit_reason is ExitReason.PAUSED
    assert result.iterations == 1
    state = SessionStore(tmp_path).load()
    assert state.status is SessionStatus.PAUSED
    assert state.iteration == 1


def test_keyboard_interrupt_pauses(tmp_path: Path):
    def interrupt(repo: Path, n: int) -> str:
        raise KeyboardInterrupt

    result = make_loop(tmp_path, ScriptedAgent(interrupt)).run()

    assert result.exit_reason is ExitReason.PAUSED
    assert result.iterations == 0
    assert SessionStore(tmp_path).load().status is SessionStatus.PAUSED


def test_unexpected_error_is_reported(tmp_path: Path):
    class ExplodingValidator:
        def run(self, cwd, commands):
            raise RuntimeError("validator crashed")

    result = make_loop(
        tmp_path,
        ScriptedAgent(edit("Updated the module")),
        validator=ExplodingValidator(),
        validate_changes=True,
        validation_commands=LINT,
    ).run()

    assert result.exit_reason is ExitReason.ERROR
    assert "validator crashed" in result.error
    assert SessionStore(tmp_path).load().status is SessionStatus.FAILED


def test_conflicting_session_is_rejected(tmp_path: Path):
    SessionStore(tmp_path).create("other task", max_iterations=3)
    with pytest.raises(SessionConflictError):
        make_loop(tmp_path, ScriptedAgent(say("x"))).run()


def test_resume_continues_numbering(tmp_path: Path):
    store = SessionStore(tmp_path)
    state = store.create("Build the parser", max_iterations=4)
    state.iteration = 2
    store.save(state)
    store.pause()
    resumed = store.resume()

    agent = ScriptedAgent(edit("Finished <promise>COMPLETE</promise>"))
    result = make_loop(tmp_path, agent, resume_session=resumed).run()

    assert result.iterations == 3
    assert result.records[0].index == 3
    assert "iteration 3/4" in agent.prompts[0]
    assert store.load().status is SessionStatus.COMPLETED


def test_resume_resets_breaker_and_keeps_earlier_duration(tmp_path: Path):
    store = SessionStore(tmp_path)
    state = store.create("Build the parser", max_iterations=5)
    state.iteration = 2
    state.stats.total_duration_seconds = 100.0
    store.save(state)
    store.pause()
    resumed = store.resume()

    breaker = CircuitBreaker(3)
    breaker.record_failure("crashed")
    breaker.record_failure("crashed")
    failing = RunResult(success=False, exit_code=1, output="", errors=["crashed"])
    agent = ScriptedAgent(lambda repo, n: failing, edit("Finished <promise>COMPLETE</promise>"))
    result = make_loop(tmp_path, agent, resume_session=resumed, circuit_breaker=breaker).run()

    assert result.exit_reason is ExitReason.COMPLETED
    assert result.iterations == 4
    assert store.load().stats.total_duration_seconds >= 100.0


def test_record_start_time_precedes_agent_call(tmp_path: Path):
    invoked: list[str] = []

    def slow(repo: Path, n: int) -> str:
        invoked.append(utc_now_iso())
        time.sleep(0.2)
        (repo / "out.txt").write_text("x", encoding="utf-8")
        return "Finished <promise>COMPLETE</promise>"

    result = make_loop(tmp_path, ScriptedAgent(slow)).run()

    started = dt.datetime.fromisoformat(result.records[0].started_at)
    assert started <= dt.datetime.fromisoformat(invoked[0])
    assert result.records[0].duration_ms >= 200


def test_commits_when_enabled(tmp_path: Path, monkeypatch):
    messages: list[str] = []

    def fake_commit(repo, message):
        messages.append(message)
        return "abc1234"

    monkeypatch.setattr(loop_module, "commit_all", fake_commit)
    monkeypatch.setattr(loop_module, "ensure_git_identity", lambda repo: None)
    monkeypatch.setattr(loop_module, "take_snapshot", lambda cwd, use_git: take_snapshot(cwd, use_git=False))

    config = LoopConfig(task="Build the parser", validate_changes=False, max_iterations=3, commit=True)
    agent = ScriptedAgent(edit("Updated the module"), edit("Done <promise>COMPLETE</promise>"))
    result = IterationLoop(tmp_path, config, agent=agent, use_git=True).run()

    assert result.commits == ["abc1234", "abc1234"]
    assert result.records[0].committed
    assert messages[0].startswith("loopsmith: iteration 1:")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_stall_threshold():
    assert stall_threshold(0) == 3
    assert stall_threshold(5) == 3
    assert stall_threshold(6) == 4


def test_is_final_round():
    pending = parse_plan("- [ ] a\n")
    finished = parse_plan("- [x] a\n")
    assert is_final_round(5, 5, pending, Verdict.CONTINUE)
    assert not is_final_round(2, 5, pending, Verdict.DONE)
    assert is_final_round(2, 5, finished, Verdict.CONTINUE)
    assert is_final_round(2, 5, EMPTY_LEDGER, Verdict.DONE)
    assert not is_final_round(2, 5, EMPTY_LEDGER, Verdict.CONTINUE)


@pytest.mark.parametrize("reason", list(ExitReason))
def test_describe_exit_covers_every_reason(reason):
    text = describe_exit(LoopResult(exit_reason=reason, iterations=2, error="why"))
    assert text


def test_final_round_extension_respects_hard_cap(tmp_path: Path):
    result = make_loop(
        tmp_path,
        ScriptedAgent(edit("Updated the module")),
        validator=FakeValidator(False),
        validate_changes=True,
        validation_commands=LINT,
        max_iterations=2,
        hard_iteration_cap=3,
        circuit_breaker_failures=10,
    ).run()

    assert result.stats.final_max_iterations == 3
    assert result.iterations == 3
