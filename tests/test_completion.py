"""Unit tests for round output classification."""

from __future__ import annotations

import pytest

from loopsmith.completion import (
    BlockKind,
    CompletionPolicy,
    Confidence,
    Verdict,
    analyze_output,
    block_hint,
    classify,
    classify_block,
    determine_confidence,
    has_exit_signal,
)

pytestmark = pytest.mark.unit


class TestClassify:
    def test_custom_token_is_done_even_next_to_blocked_phrase(self):
        policy = CompletionPolicy(completion_token="SHIP_IT")
        result = classify("Cannot proceed with the docs, but SHIP_IT", policy)
        assert result.verdict is Verdict.DONE
        assert "SHIP_IT" in result.reason

    def test_custom_token_wins_over_require_exit_signal(self):
        policy = CompletionPolicy(completion_token="SHIP_IT", require_exit_signal=True)
        assert classify("SHIP_IT", policy).is_done

    def test_completion_tag(self):
        assert classify("work finished <promise>COMPLETE</promise>").is_done

    def test_exit_signal_case_insensitive(self):
        assert classify("exit_signal:   TRUE").is_done

    def test_legacy_phrase(self):
        assert classify("...\nTASK COMPLETED\n").is_done

    def test_legacy_phrase_ignored_when_exit_signal_required(self):
        policy = CompletionPolicy(require_exit_signal=True)
        assert classify("All tasks completed", policy).verdict is Verdict.CONTINUE

    def test_blocked_phrase_without_token(self):
        result = classify("I cannot proceed without credentials")
        assert result.is_blocked

    def test_blocked_marker_tag(self):
        assert classify("<TASK_BLOCKED> missing API key").is_blocked

    def test_plain_progress_continues(self):
        result = classify("Working on the parser, next step is tests.")
        assert result.verdict is Verdict.CONTINUE
        assert result.analysis.progress_score > 0

    def test_empty_output_continues(self):
        assert classify("").verdict is Verdict.CONTINUE

    def test_scoring_reaches_done(self):
        text = "The implementation is complete and ready for review."
        result = classify(text)
        assert result.is_done
        assert "completion score" in result.reason

    def test_min_indicators_blocks_single_strong_match(self):
        policy = CompletionPolicy(min_completion_indicators=3)
        text = "The implementation is complete."
        assert classify(text, policy).verdict is Verdict.CONTINUE

    def test_stuck_scoring_blocks(self):
        text = "I am stuck on this and unable to resolve the same error again."
        assert classify(text).is_blocked


class TestAnalyzeOutput:
    def test_scores_are_capped(self):
        text = (
            "<TASK_DONE> <TASK_COMPLETE> all tasks completed, implementation complete, "
            "successfully implemented"
        )
        analysis = analyze_output(text)
        assert analysis.completion_score == 1.0
        assert len(analysis.completion_indicators) >= 4

    def test_exit_signal_flag(self):
        assert analyze_output("EXIT_SIGNAL: true").has_exit_signal
        assert has_exit_signal("<promise>COMPLETE</promise>")
        assert not has_exit_signal("EXIT_SIGNAL: false")


@pytest.mark.parametrize(
    ("completion", "stuck", "expected"),
    [
        (0.9, 0.0, Confidence.HIGH),
        (0.0, 0.9, Confidence.HIGH),
        (0.6, 0.6, Confidence.LOW),
        (0.1, 0.1, Confidence.LOW),
        (0.6, 0.3, Confidence.MEDIUM),
    ],
)
def test_determine_confidence(completion, stuck, expected):
    assert determine_confidence(completion, stuck) is expected


def test_policy_rejects_zero_indicators():
    with pytest.raises(ValueError):
        CompletionPolicy(min_completion_indicators=0)


class TestBlockKind:
    def test_rate_limit(self):
        assert classify_block("Error 429: Too Many Requests") is BlockKind.RATE_LIMIT

    def test_permission(self):
        assert classify_block("Permission denied writing /etc/hosts") is BlockKind.PERMISSION

    def test_generic(self):
        assert classify_block("Cannot proceed") is BlockKind.GENERIC

    def test_hints_differ(self):
        hints = {block_hint(kind) for kind in BlockKind}
        assert len(hints) == len(BlockKind)
