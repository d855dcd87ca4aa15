"""CLI entrypoint for loopsmith."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError

from loopsmith import __version__
from loopsmith.agents import create_agent, detect_available_agents
from loopsmith.agent_runner import AgentRunner, list_agents
from loopsmith.config import LoopConfig, build_config
from loopsmith.loop import IterationLoop, describe_exit
from loopsmith.presets import load_presets, project_presets_path
from loopsmith.progress import ProgressLog, clear_completion_signals
from loopsmith.schemas import LoopResult, SessionStatus
from loopsmith.session import (
    SessionConflictError,
    SessionError,
    SessionStore,
    can_resume,
    format_summary,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so it's found regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all subcommands."""
    p = argparse.ArgumentParser(
        prog="loopsmith",
        description="loopsmith - run a coding agent in rounds until the task is done.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument(
        "--cwd",
        "-C",
        type=str,
        default=".",
        help="Working directory the agent operates in (default: current directory).",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    # -- run -------------------------------------------------------------------
    run_p = sub.add_parser("run", help="Start a new loop.")
    run_p.add_argument("task", nargs="?", default="", help="Task description.")
    run_p.add_argument("--task-file", type=str, default="", help="Read the task from a file.")
    run_p.add_argument(
        "--max-iterations",
        "-n",
        type=int,
        default=None,
        help="Round budget; estimated from the plan when omitted.",
    )
    run_p.add_argument("--agent", type=str, default=None, help="Agent key (see 'loopsmith agents').")
    run_p.add_argument("--model", type=str, default=None, help="Model name passed to the agent.")
    run_p.add_argument(
        "--auto",
        action="store_true",
        default=None,
        help="Let the agent act without permission prompts.",
    )
    run_p.add_argument("--commit", action="store_true", default=None, help="Commit after each round.")
    run_p.add_argument("--push", action="store_true", default=None, help="Push commits when done.")
    run_p.add_argument("--pr", action="store_true", default=None, help="Open a pull request when done.")
    run_p.add_argument(
        "--validate",
        dest="validate_changes",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Run lint/typecheck/test/build checks after rounds (default: on).",
    )
    run_p.add_argument("--rate-limit", type=int, default=None, help="Maximum agent calls per hour.")
    run_p.add_argument("--max-cost", type=float, default=None, help="Stop once this many USD are spent.")
    run_p.add_argument(
        "--completion-promise",
        type=str,
        default=None,
        help="Custom token whose presence means the task is done.",
    )
    run_p.add_argument(
        "--require-exit-signal",
        action="store_true",
        default=None,
        help="Only accept explicit completion signals.",
    )
    run_p.add_argument("--min-indicators", type=int, default=None, help="Completion indicators required.")
    run_p.add_argument(
        "--circuit-breaker-failures",
        type=int,
        default=None,
        help="Consecutive failed rounds before stopping (default: 3).",
    )
    run_p.add_argument(
        "--circuit-breaker-errors",
        type=int,
        default=None,
        help="Distinct error signatures before stopping (default: 5).",
    )
    run_p.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="Inactivity timeout in seconds per agent invocation; 0 disables (default: 600).",
    )
    run_p.add_argument("--token-budget", type=int, default=None, help="Prompt token budget; 0 disables.")
    run_p.add_argument("--warmup", type=int, default=None, help="Rounds to skip validation at the start.")
    run_p.add_argument("--preset", type=str, default=None, help="Apply a named preset.")
    run_p.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not append to .loopsmith/activity.md.",
    )

    # -- session control -------------------------------------------------------
    pause_p = sub.add_parser("pause", help="Ask a running loop to pause after its current round.")
    pause_p.add_argument("--reason", type=str, default=None, help="Recorded with the session.")

    resume_p = sub.add_parser("resume", help="Continue a paused loop.")
    resume_p.add_argument(
        "--force",
        action="store_true",
        help="Also resume a session left running or failed by a crashed process.",
    )

    status_p = sub.add_parser("status", help="Show the stored session.")
    status_p.add_argument("--json", action="store_true", help="Emit machine-readable JSON.")

    sub.add_parser("clear", help="Delete session state, activity log and completion sentinels.")
    sub.add_parser("presets", help="List available presets.")
    sub.add_parser("agents", help="List registered agents and whether their CLI is installed.")
    return p


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _read_task(args: argparse.Namespace) -> str:
    if args.task_file:
        return Path(args.task_file).read_text(encoding="utf-8")
    return args.task


def _explicit_options(args: argparse.Namespace, task: str) -> dict[str, Any]:
    """Map parsed flags to config fields; unset flags are ``None``."""
    return {
        "task": task,
        "max_iterations": args.max_iterations,
        "agent": args.agent,
        "model": args.model,
        "auto": args.auto,
        "commit": args.commit,
        "push": args.push,
        "pull_request": args.pr,
        "validate_changes": args.validate_changes,
        "rate_limit": args.rate_limit,
        "max_cost": args.max_cost,
        "completion_token": args.completion_promise,
        "require_exit_signal": args.require_exit_signal,
        "min_completion_indicators": args.min_indicators,
        "circuit_breaker_failures": args.circuit_breaker_failures,
        "circuit_breaker_errors": args.circuit_breaker_errors,
        "agent_timeout_seconds": args.timeout,
        "context_token_budget": args.token_budget,
        "warmup_iterations": args.warmup,
        "track_progress": False if args.no_progress else None,
    }


def _prepare_agent(config: LoopConfig) -> tuple[AgentRunner | None, int]:
    """Build the configured agent; on failure return ``None`` and an exit code."""
    try:
        agent = create_agent(
            config.agent,
            timeout=config.agent_timeout_seconds,
            auto=config.auto,
            model=config.model,
        )
    except KeyError as exc:
        print(f"Error: {exc.args[0]}", file=sys.stderr)
        return None, EXIT_USAGE
    if not agent.is_available():
        print(f"Error: the '{agent.binary}' CLI for agent '{config.agent}' was not found.", file=sys.stderr)
        return None, EXIT_FAILURE
    return agent, EXIT_OK


def _execute(cwd: Path, config: LoopConfig, agent: AgentRunner, **kwargs: Any) -> int:
    try:
        result = IterationLoop(cwd, config, agent=agent, **kwargs).run()
    except SessionConflictError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    _print_summary(result)
    return EXIT_OK if result.success else EXIT_FAILURE


def _run(args: argparse.Namespace, cwd: Path) -> int:
    try:
        task = _read_task(args)
    except OSError as exc:
        print(f"Error: cannot read task file: {exc}", file=sys.stderr)
        return EXIT_USAGE
    if not task.strip():
        print("Error: provide a TASK argument or --task-file.", file=sys.stderr)
        return EXIT_USAGE
    try:
        config = build_config(_explicit_options(args, task), preset=args.preset, cwd=cwd)
    except KeyError as exc:
        print(f"Error: {exc.args[0]}", file=sys.stderr)
        return EXIT_USAGE
    except ValidationError as exc:
        print(f"Error: invalid options:\n{exc}", file=sys.stderr)
        return EXIT_USAGE
    agent, rc = _prepare_agent(config)
    if agent is None:
        return rc
    return _execute(cwd, config, agent)


def _resume(args: argparse.Namespace, cwd: Path) -> int:
    store = SessionStore(cwd)
    session = store.load()
    if session is None:
        print("Error: no session to resume.", file=sys.stderr)
        return EXIT_USAGE
    if args.force and session.status is not SessionStatus.PAUSED:
        session.status = SessionStatus.PAUSED
        store.save(session)
    if not can_resume(session):
        print(
            f"Error: session {session.id} is {session.status.value} at "
            f"{session.iteration}/{session.max_iterations} and cannot be resumed.",
            file=sys.stderr,
        )
        return EXIT_USAGE
    try:
        config = LoopConfig(task=session.task, **session.options)
    except ValidationError as exc:
        print(f"Error: stored session options are invalid:\n{exc}", file=sys.stderr)
        return EXIT_USAGE
    agent, rc = _prepare_agent(config)
    if agent is None:
        return rc
    session = store.resume()
    return _execute(cwd, config, agent, session_store=store, resume_session=session)


def _pause(args: argparse.Namespace, cwd: Path) -> int:
    try:
        state = SessionStore(cwd).pause(args.reason)
    except SessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"Pause requested for session {state.id}; it stops after the current round.")
    return EXIT_OK


def _status(args: argparse.Namespace, cwd: Path) -> int:
    state = SessionStore(cwd).load()
    if args.json:
        print(json.dumps(state.model_dump(mode="json") if state else None, indent=2))
        return EXIT_OK
    if state is None:
        print("No session.")
        return EXIT_OK
    print(format_summary(state))
    return EXIT_OK


def _clear(cwd: Path) -> int:
    store = SessionStore(cwd)
    state = store.load()
    if state is not None and state.status is SessionStatus.RUNNING:
        print(f"Error: session {state.id} is running; pause it first.", file=sys.stderr)
        return EXIT_FAILURE
    removed = store.delete()
    ProgressLog(cwd).clear()
    sentinels = clear_completion_signals(cwd)
    print(f"Cleared session: {'yes' if removed else 'none'}; sentinels removed: {len(sentinels)}")
    return EXIT_OK


def _list_presets(cwd: Path) -> int:
    presets = load_presets(project_presets_path(cwd))
    if not presets:
        print("No presets found.")
        return EXIT_OK
    width = max(len(name) for name in presets)
    for name, preset in sorted(presets.items()):
        print(f"  {name:<{width}}  {preset.description}")
    return EXIT_OK


def _list_agents() -> int:
    available = set(detect_available_agents())
    for key in list_agents():
        mark = "installed" if key in available else "missing"
        print(f"  {key:<12}  {mark}")
    return EXIT_OK


def _print_summary(result: LoopResult) -> None:
    stats = result.stats
    print("\n" + "=" * 60)
    print("  loopsmith - Run Summary")
    print("=" * 60)
    print(f"  Outcome:     {describe_exit(result)}")
    print(f"  Exit reason: {result.exit_reason.value}")
    print(f"  Iterations:  {result.iterations} / {stats.final_max_iterations}")
    print(f"  Commits:     {len(result.commits)}")
    print(f"  Duration:    {stats.total_duration_seconds:.1f}s")
    if stats.validation_failures:
        print(f"  Validation:  {stats.validation_failures} failed round(s)")
    cost = stats.cost
    if cost.get("total_tokens"):
        print(f"  Usage:       {cost['total_tokens']:,} tokens, ${cost['total_cost']:.4f}")
    print("=" * 60)
    print()


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the selected subcommand."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    cwd = Path(args.cwd).resolve()
    if not cwd.is_dir():
        print(f"Error: working directory does not exist: {cwd}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "run":
        return _run(args, cwd)
    if args.command == "resume":
        return _resume(args, cwd)
    if args.command == "pause":
        return _pause(args, cwd)
    if args.command == "status":
        return _status(args, cwd)
    if args.command == "clear":
        return _clear(cwd)
    if args.command == "presets":
        return _list_presets(cwd)
    if args.command == "agents":
        return _list_agents()

    parser.print_help()
    return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
