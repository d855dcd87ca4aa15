"""Tests for loop configuration, environment defaults and layering."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

import loopsmith.config as config_module
from loopsmith.config import LoopConfig, build_config, env_defaults
from loopsmith.presets import Preset


def test_defaults():
    config = LoopConfig(task="  build it  ")
    assert config.task == "build it"
    assert config.max_iterations is None
    assert config.agent == "claude_code"
    assert config.hard_iteration_cap == 50
    assert config.validate_changes is True
    assert config.circuit_breaker_failures == 3
    assert config.circuit_breaker_errors == 5
    assert config.rate_limit is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"task": "   "},
        {"task": "t", "max_iterations": 0},
        {"task": "t", "circuit_breaker_failures": 0},
        {"task": "t", "min_completion_indicators": 0},
        {"task": "t", "rate_limit": 0},
    ],
)
def test_invalid_values_rejected(kwargs):
    with pytest.raises(ValidationError):
        LoopConfig(**kwargs)


def test_pull_request_implies_push_and_commit():
    config = LoopConfig(task="t", pull_request=True)
    assert config.push and config.commit


def test_blank_completion_token_is_none():
    assert LoopConfig(task="t", completion_token="  ").completion_token is None
    assert LoopConfig(task="t", completion_token=" DONE ").completion_token == "DONE"


def test_completion_policy_and_session_options():
    config = LoopConfig(task="t", completion_token="DONE", require_exit_signal=True)
    policy = config.completion_policy()
    assert policy.completion_token == "DONE"
    assert policy.require_exit_signal
    options = config.session_options()
    assert "task" not in options
    assert LoopConfig(task="t", **options) == config


def test_env_defaults_casts_and_skips_bad_values(caplog):
    env = {
        "LOOPSMITH_AGENT": "codex",
        "LOOPSMITH_TIMEOUT": "120",
        "LOOPSMITH_MAX_COST": "2.5",
        "LOOPSMITH_RATE_LIMIT": "many",
        "LOOPSMITH_MODEL": "  ",
    }
    values = env_defaults(env)
    assert values == {"agent": "codex", "agent_timeout_seconds": 120, "max_cost": 2.5}
    assert "LOOPSMITH_RATE_LIMIT" in caplog.text


def test_build_config_layering(monkeypatch):
    preset = Preset(name="fast", max_iterations=9, commit=True, completion_token="FAST_DONE")
    monkeypatch.setattr(config_module, "get_preset", lambda name, **kwargs: preset)
    env = {"LOOPSMITH_AGENT": "codex", "LOOPSMITH_MAX_COST": "1"}

    config = build_config(
        {"task": "t", "max_iterations": 4, "agent": None, "commit": None},
        preset="fast",
        environ=env,
    )
    assert config.max_iterations == 4
    assert config.commit is True
    assert config.completion_token == "FAST_DONE"
    assert config.agent == "codex"
    assert config.max_cost == 1.0
    assert config.preset == "fast"


def test_build_config_unknown_preset():
    with pytest.raises(KeyError):
        build_config({"task": "t"}, preset="no-such-preset", environ={})


def test_build_config_reads_project_presets(tmp_path):
    project = tmp_path / ".loopsmith" / "presets.yaml"
    project.parent.mkdir()
    project.write_text("presets:\n  local:\n    max_iterations: 7\n    commit: true\n", encoding="utf-8")

    config = build_config({"task": "t"}, preset="local", environ={}, cwd=tmp_path)
    assert config.max_iterations == 7
    assert config.commit is True

    with pytest.raises(KeyError):
        build_config({"task": "t"}, preset="local", environ={})
