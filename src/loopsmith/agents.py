"""Concrete agent runners for the supported coding-agent CLIs."""

from __future__ import annotations

import abc
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from loopsmith.agent_runner import (
    AgentRunner,
    OutputLineCallback,
    get_agent_class,
    list_agents,
    register_agent,
)
from loopsmith.runner_common import coerce_int, execute_streaming_command, resolve_binary
from loopsmith.schemas import AgentEvent, EventKind, RunResult, UsageInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600  # seconds of inactivity
_POSIX_PROMPT_ARG_LIMIT = 60_000
_WINDOWS_PROMPT_ARG_LIMIT = 24_000


class CliAgentRunner(AgentRunner):
    """Shared plumbing for agents driven through a CLI subprocess.

    Parameters
    ----------
    binary:
        Executable name or path; defaults to the class's ``default_binary``.
    timeout:
        Seconds without output before the child is killed. ``0`` disables.
    auto:
        Let the agent edit files and run commands without approval prompts.
    model:
        Optional model override passed to the CLI.
    env_overrides:
        Extra environment variables for the child process.
    extra_args:
        Flags appended verbatim to every invocation.
    """

    default_binary: str = ""
    #: Prompt is read from stdin when passed as this argument.
    stdin_prompt_arg: str | None = None

    def __init__(
        self,
        binary: str | None = None,
        *,
        timeout: int = DEFAULT_TIMEOUT,
        auto: bool = False,
        model: str = "",
        env_overrides: dict[str, str] | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        super().__init__()
        self.binary = binary or self.default_binary
        self.timeout = max(0, coerce_int(timeout))
        self.auto = auto
        self.model = (model or "").strip()
        self.env_overrides = dict(env_overrides or {})
        self.extra_args = list(extra_args or [])

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return argv for one invocation with *prompt* in place."""

    def parse_line(self, line: str) -> AgentEvent | None:
        """Plain-text agents: every line is a text event."""
        return AgentEvent(kind=EventKind.TEXT, text=line)

    def usage_from(self, events: list[AgentEvent]) -> UsageInfo:
        return UsageInfo(model=self.model or None)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        timeout_seconds: int | None = None,
        on_output_line: OutputLineCallback | None = None,
    ) -> RunResult:
        repo_path = Path(repo_path).resolve()
        if not repo_path.is_dir():
            return RunResult(errors=[f"repo_path does not exist: {repo_path}"])

        timeout = self.timeout if timeout_seconds is None else max(0, timeout_seconds)
        use_stdin = self.stdin_prompt_arg is not None and len(prompt) >= self._prompt_arg_limit()
        cmd = self.build_command(self.stdin_prompt_arg if use_stdin else prompt)
        logger.info(
            "Running %s (cwd=%s, prompt_transport=%s, prompt_len=%d, prompt_sha256=%s)",
            self.name,
            repo_path,
            "stdin" if use_stdin else "argv",
            len(prompt),
            hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16],
        )

        start = time.monotonic()
        try:
            execution = execute_streaming_command(
                cmd=cmd,
                cwd=repo_path,
                env={**os.environ, **self.env_overrides},
                timeout_seconds=timeout,
                parse_stdout_line=self.parse_line,
                process_name=self.name,
                stdin_text=prompt if use_stdin else None,
                on_output_line=on_output_line,
            )
        except OSError as exc:
            return RunResult(
                errors=[f"Failed to execute {self.binary}: {exc}"],
                duration_seconds=time.monotonic() - start,
            )

        result = self._aggregate(execution.events, execution.raw_lines, execution.exit_code)
        if execution.stderr_text:
            result.errors.append(execution.stderr_text)
        if execution.timed_out:
            result.success = False
            result.timed_out = True
            result.errors.append(f"{self.name} timed out after {timeout}s with no output activity")
        elif result.exit_code != 0 and not result.errors:
            result.errors.append(f"{self.name} exited with status {result.exit_code}")
        result.duration_seconds = time.monotonic() - start
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _prompt_arg_limit() -> int:
        return _WINDOWS_PROMPT_ARG_LIMIT if os.name == "nt" else _POSIX_PROMPT_ARG_LIMIT

    def _aggregate(self, events: list[AgentEvent], raw_lines: list[str], exit_code: int) -> RunResult:
        texts = [ev.text for ev in events if ev.text]
        output = "\n".join(texts) if texts else "\n".join(raw_lines)
        final_message = ""
        for ev in reversed(events):
            if ev.kind in (EventKind.AGENT_MESSAGE, EventKind.TEXT) and ev.text:
                final_message = ev.text
                break
        errors = [ev.text for ev in events if ev.kind is EventKind.ERROR and ev.text]
        return RunResult(
            success=exit_code == 0,
            exit_code=exit_code,
            output=output,
            final_message=final_message,
            events=events,
            usage=self.usage_from(events),
            errors=errors,
        )


def _json_or_none(line: str) -> dict[str, Any] | None:
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _usage_from_payload(raw: dict[str, Any], model: str | None) -> UsageInfo:
    usage = raw.get("usage")
    if not isinstance(usage, dict):
        result = raw.get("result")
        usage = result.get("usage") if isinstance(result, dict) else None
    if not isinstance(usage, dict):
        return UsageInfo(model=model)
    input_tokens = max(0, coerce_int(usage.get("input_tokens")))
    input_tokens += max(0, coerce_int(usage.get("cache_read_input_tokens")))
    input_tokens += max(0, coerce_int(usage.get("cache_creation_input_tokens")))
    output_tokens = max(0, coerce_int(usage.get("output_tokens")))
    total = max(0, coerce_int(usage.get("total_tokens"))) or input_tokens + output_tokens
    return UsageInfo(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total,
        model=raw.get("model") or usage.get("model") or model,
    )


# ---------------------------------------------------------------------------
# Claude Code
# ---------------------------------------------------------------------------


class ClaudeCodeRunner(CliAgentRunner):
    """``claude -p <prompt> --output-format stream-json``.

    Stream-json emits ``system``, ``assistant`` and a final ``result``
    object; assistant text blocks and the result text become output.
    """

    name = "Claude Code"
    default_binary = "claude"
    stdin_prompt_arg = "-"

    def build_command(self, prompt: str) -> list[str]:
        cmd = [resolve_binary(self.binary), "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if self.auto:
            cmd.append("--dangerously-skip-permissions")
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(self.extra_args)
        return cmd

    def parse_line(self, line: str) -> AgentEvent | None:
        data = _json_or_none(line)
        if data is None:
            return AgentEvent(kind=EventKind.TEXT, text=line)
        etype = str(data.get("type") or "").lower()
        if etype == "result":
            result = data.get("result")
            text = result if isinstance(result, str) else None
            kind = EventKind.ERROR if data.get("is_error") else EventKind.TURN_COMPLETED
            return AgentEvent(kind=kind, raw=data, text=text)
        if etype == "assistant":
            return _claude_assistant_event(data)
        if etype == "error" or "error" in data:
            err = data.get("error")
            text = err.get("message") if isinstance(err, dict) else err
            return AgentEvent(kind=EventKind.ERROR, raw=data, text=str(text or line))
        return AgentEvent(kind=EventKind.UNKNOWN, raw=data)

    def usage_from(self, events: list[AgentEvent]) -> UsageInfo:
        for ev in reversed(events):
            if ev.raw.get("type") == "result":
                return _usage_from_payload(ev.raw, self.model or None)
        return UsageInfo(model=self.model or None)

    def _aggregate(self, events: list[AgentEvent], raw_lines: list[str], exit_code: int) -> RunResult:
        # The final result event repeats the last assistant message.
        body = [ev for ev in events if ev.kind is not EventKind.TURN_COMPLETED]
        result = super()._aggregate(body, raw_lines, exit_code)
        result.events = events
        result.usage = self.usage_from(events)
        for ev in reversed(events):
            if ev.kind is EventKind.TURN_COMPLETED and ev.text:
                result.final_message = ev.text
                if ev.text not in result.output:
                    result.output = f"{result.output}\n{ev.text}".strip()
                break
        return result


def _claude_assistant_event(data: dict[str, Any]) -> AgentEvent:
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return AgentEvent(kind=EventKind.AGENT_MESSAGE, raw=data, text=content)
    texts: list[str] = []
    kind = EventKind.AGENT_MESSAGE
    for block in content if isinstance(content, list) else []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            texts.append(str(block.get("text") or ""))
        elif block.get("type") == "tool_use":
            tool = str(block.get("name") or "tool")
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
            lowered = tool.lower()
            if any(k in lowered for k in ("write", "edit", "create")):
                kind = EventKind.FILE_CHANGE
            elif any(k in lowered for k in ("bash", "command", "exec")):
                kind = EventKind.COMMAND_EXEC
            target = tool_input.get("file_path") or tool_input.get("path") or tool_input.get("command") or ""
            texts.append(f"[{tool}: {str(target)[:100]}]" if target else f"[{tool}]")
    return AgentEvent(kind=kind, raw=data, text="\n".join(t for t in texts if t).strip() or None)


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------


class CodexRunner(CliAgentRunner):
    """``codex exec --json <prompt>``; JSONL items carry messages and commands."""

    name = "Codex"
    default_binary = "codex"
    stdin_prompt_arg = "-"

    def build_command(self, prompt: str) -> list[str]:
        cmd = [resolve_binary(self.binary), "exec", "--json"]
        if self.auto:
            cmd.append("--full-auto")
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(self.extra_args)
        cmd.append(prompt)
        return cmd

    def parse_line(self, line: str) -> AgentEvent | None:
        data = _json_or_none(line)
        if data is None:
            return AgentEvent(kind=EventKind.TEXT, text=line)
        etype = str(data.get("type") or "").lower()
        if etype == "turn.completed":
            return AgentEvent(kind=EventKind.TURN_COMPLETED, raw=data)
        if etype in ("error", "turn.failed"):
            err = data.get("error") if isinstance(data.get("error"), dict) else {}
            text = err.get("message") or data.get("message") or line
            return AgentEvent(kind=EventKind.ERROR, raw=data, text=str(text))
        item = data.get("item")
        if etype == "item.completed" and isinstance(item, dict):
            item_type = str(item.get("type") or "").lower()
            if item_type == "agent_message":
                return AgentEvent(kind=EventKind.AGENT_MESSAGE, raw=data, text=item.get("text"))
            if item_type == "command_execution":
                text = f"[exec: {str(item.get('command', ''))[:200]}] (exit {item.get('exit_code', '?')})"
                return AgentEvent(kind=EventKind.COMMAND_EXEC, raw=data, text=text)
            if item_type == "file_change":
                return AgentEvent(kind=EventKind.FILE_CHANGE, raw=data)
        return AgentEvent(kind=EventKind.UNKNOWN, raw=data)

    def usage_from(self, events: list[AgentEvent]) -> UsageInfo:
        input_tokens = output_tokens = 0
        for ev in events:
            if ev.kind is EventKind.TURN_COMPLETED:
                usage = _usage_from_payload(ev.raw, None)
                input_tokens += usage.input_tokens
                output_tokens += usage.output_tokens
        return UsageInfo(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            model=self.model or None,
        )


# ---------------------------------------------------------------------------
# Plain-text agents
# ---------------------------------------------------------------------------


class CursorRunner(CliAgentRunner):
    """``cursor-agent -p <prompt> --output-format text``."""

    name = "Cursor"
    default_binary = "cursor-agent"

    def build_command(self, prompt: str) -> list[str]:
        cmd = [resolve_binary(self.binary), "-p", prompt, "--output-format", "text"]
        if self.auto:
            cmd.append("--force")
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(self.extra_args)
        return cmd


class OpenCodeRunner(CliAgentRunner):
    """``opencode run <prompt>``."""

    name = "OpenCode"
    default_binary = "opencode"

    def build_command(self, prompt: str) -> list[str]:
        cmd = [resolve_binary(self.binary), "run"]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(self.extra_args)
        cmd.append(prompt)
        return cmd


register_agent("claude_code", ClaudeCodeRunner)
register_agent("codex", CodexRunner)
register_agent("cursor", CursorRunner)
register_agent("opencode", OpenCodeRunner)


def create_agent(key: str, **kwargs: Any) -> AgentRunner:
    """Instantiate the runner registered under *key*."""
    return get_agent_class(key)(**kwargs)


def detect_available_agents() -> list[str]:
    """Return registry keys whose CLI responds to ``--version``."""
    return [key for key in list_agents() if get_agent_class(key)().is_available()]
