"""Tests for agent runner registry helpers."""

from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

import loopsmith.agent_runner as agent_runner_module
from loopsmith.agent_runner import AgentRunner, get_agent_class, list_agents, register_agent
from loopsmith.schemas import RunResult

pytestmark = pytest.mark.unit


class _DummyRunner(AgentRunner):
    name = "dummy"
    binary = "dummy-cli"

    def run(self, repo_path: str | Path, prompt: str, *, timeout_seconds=None, on_output_line=None) -> RunResult:
        return RunResult(success=True, exit_code=0)


def test_register_get_and_list_agents(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})

    register_agent("b", _DummyRunner)
    register_agent("a", _DummyRunner)

    assert get_agent_class("a") is _DummyRunner
    assert list_agents() == ["a", "b"]


def test_keys_are_normalized(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})
    register_agent("Claude-Code", _DummyRunner)

    assert get_agent_class("claude_code") is _DummyRunner
    assert get_agent_class(" claude-code ") is _DummyRunner


def test_get_agent_class_raises_helpful_error(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})
    with pytest.raises(KeyError, match=r"Unknown agent 'missing'. Available: \(none\)"):
        get_agent_class("missing")

    register_agent("codex", _DummyRunner)
    with pytest.raises(KeyError, match=r"Available: codex"):
        get_agent_class("missing")


def test_register_rejects_empty_key(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})
    with pytest.raises(ValueError):
        register_agent("  ", _DummyRunner)


def test_availability_check_is_cached(monkeypatch) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return SimpleNamespace(returncode=0)

    monkeypatch.setattr(agent_runner_module.subprocess, "run", fake_run)
    runner = _DummyRunner()

    assert runner.is_available()
    assert runner.is_available()
    assert calls == [["dummy-cli", "--version"]]


def test_availability_check_handles_missing_binary(monkeypatch) -> None:
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(agent_runner_module.subprocess, "run", missing)
    assert _DummyRunner().is_available() is False


def test_availability_check_handles_timeout(monkeypatch) -> None:
    def slow(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, 15)

    monkeypatch.setattr(agent_runner_module.subprocess, "run", slow)
    assert _DummyRunner().is_available() is False


def test_runner_without_binary_is_unavailable() -> None:
    class _NoBinary(_DummyRunner):
        binary = ""

    assert _NoBinary().is_available() is False
