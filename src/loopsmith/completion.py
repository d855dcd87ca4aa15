"""Classify agent output as done, blocked, or still in progress.

Explicit machine signals are checked first, then fixed legacy phrases, then
a weighted rule table scored into completion and stuck values in ``[0, 1]``.
Everything here is a pure function of the output text and the
:class:`CompletionPolicy`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field

COMPLETION_TAG = "<promise>COMPLETE</promise>"
EXIT_SIGNAL_RE = re.compile(r"EXIT_SIGNAL:\s*true", re.IGNORECASE)

LEGACY_COMPLETION_PHRASES: tuple[str, ...] = (
    "<TASK_DONE>",
    "<TASK_COMPLETE>",
    "TASK COMPLETED",
    "All tasks completed",
    "Successfully completed",
)

BLOCKED_PHRASES: tuple[str, ...] = (
    "<TASK_BLOCKED>",
    "TASK BLOCKED",
    "Cannot proceed",
    "Blocked:",
)

DONE_SCORE_THRESHOLD = 0.7
STUCK_SCORE_THRESHOLD = 0.7


class Verdict(str, Enum):
    DONE = "done"
    BLOCKED = "blocked"
    CONTINUE = "continue"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RuleCategory(str, Enum):
    COMPLETION = "completion"
    STUCK = "stuck"
    PROGRESS = "progress"


class BlockKind(str, Enum):
    """Coarse cause of a blocked round, for user-facing messages."""

    RATE_LIMIT = "rate_limit"
    PERMISSION = "permission"
    GENERIC = "generic"


class CompletionPolicy(BaseModel):
    """Per-run options that shape how output is classified."""

    completion_token: str | None = None
    require_exit_signal: bool = False
    min_completion_indicators: int = Field(default=1, ge=1)


@dataclass(frozen=True, slots=True)
class ScoringRule:
    """One weighted pattern in the scoring table."""

    pattern: re.Pattern[str]
    weight: float
    category: RuleCategory


def _rule(pattern: str, weight: float, category: RuleCategory) -> ScoringRule:
    return ScoringRule(re.compile(pattern, re.IGNORECASE), weight, category)


_C = RuleCategory.COMPLETION
_S = RuleCategory.STUCK
_P = RuleCategory.PROGRESS

SCORING_RULES: tuple[ScoringRule, ...] = (
    # completion
    _rule(r"<promise>COMPLETE</promise>", 1.0, _C),
    _rule(r"EXIT_SIGNAL:\s*true", 1.0, _C),
    _rule(r"<TASK_DONE>", 1.0, _C),
    _rule(r"<TASK_COMPLETE>", 1.0, _C),
    _rule(r"all\s+tasks?\s+(are\s+)?completed?", 0.9, _C),
    _rule(r"implementation\s+(is\s+)?complete", 0.9, _C),
    _rule(r"feature\s+(is\s+)?ready", 0.8, _C),
    _rule(r"successfully\s+(implemented|completed|finished)", 0.9, _C),
    _rule(r"no\s+more\s+tasks?\s+(remaining|left)", 0.9, _C),
    _rule(r"everything\s+(is\s+)?(done|working|complete)", 0.7, _C),
    _rule(r"all\s+tests?\s+pass(ing|ed)?", 0.6, _C),
    _rule(r"build\s+succeed(s|ed)?", 0.5, _C),
    _rule(r"ready\s+(for|to)\s+(review|merge|deploy)", 0.8, _C),
    _rule(r"task\s+(has\s+been\s+)?completed", 0.7, _C),
    _rule(r"finished\s+(implementing|coding|writing)", 0.5, _C),
    _rule(r"changes?\s+(have\s+been\s+)?committed", 0.3, _C),
    _rule(r"pushed\s+to\s+(remote|origin)", 0.3, _C),
    # stuck
    _rule(r"<TASK_BLOCKED>", 1.0, _S),
    _rule(r"TASK\s+BLOCKED", 1.0, _S),
    _rule(r"cannot\s+proceed", 0.9, _S),
    _rule(r"blocked\s+by", 0.9, _S),
    _rule(r"waiting\s+for\s+(human|user|manual)", 0.9, _S),
    _rule(r"need(s)?\s+(your\s+)?clarification", 0.8, _S),
    _rule(r"require(s)?\s+(human|manual)\s+intervention", 0.9, _S),
    _rule(r"same\s+error\s+again", 0.7, _S),
    _rule(r"stuck\s+(on|at|in)", 0.8, _S),
    _rule(r"unable\s+to\s+(proceed|continue|resolve)", 0.8, _S),
    _rule(r"can'?t\s+(figure\s+out|solve|fix)", 0.6, _S),
    _rule(r"infinite\s+loop", 0.9, _S),
    _rule(r"not\s+sure\s+(how|what)", 0.4, _S),
    _rule(r"need(s)?\s+more\s+(information|context)", 0.5, _S),
    _rule(r"missing\s+(dependency|file|configuration)", 0.6, _S),
    _rule(r"permission\s+denied", 0.7, _S),
    _rule(r"authentication\s+(failed|required)", 0.7, _S),
    # progress
    _rule(r"working\s+on", 0.3, _P),
    _rule(r"implementing", 0.3, _P),
    _rule(r"creating", 0.3, _P),
    _rule(r"updating", 0.3, _P),
    _rule(r"fixing", 0.3, _P),
    _rule(r"next\s+(step|task)", 0.2, _P),
)

_RATE_LIMIT_RE = re.compile(
    r"rate[\s_-]?limit|too\s+many\s+requests|\b429\b|usage\s+limit|quota\s+exceeded|overloaded",
    re.IGNORECASE,
)
_PERMISSION_RE = re.compile(
    r"permission|not\s+allowed|access\s+denied|unauthori[sz]ed|forbidden|\b403\b|approval",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class OutputAnalysis:
    """Scores and matched indicators for a piece of agent output."""

    completion_score: float = 0.0
    stuck_score: float = 0.0
    progress_score: float = 0.0
    confidence: Confidence = Confidence.LOW
    completion_indicators: tuple[str, ...] = ()
    stuck_indicators: tuple[str, ...] = ()
    progress_indicators: tuple[str, ...] = ()
    has_exit_signal: bool = False


@dataclass(frozen=True, slots=True)
class Classification:
    """Verdict for one round of output."""

    verdict: Verdict
    reason: str = ""
    analysis: OutputAnalysis = field(default_factory=OutputAnalysis)

    @property
    def is_done(self) -> bool:
        return self.verdict is Verdict.DONE

    @property
    def is_blocked(self) -> bool:
        return self.verdict is Verdict.BLOCKED


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def has_exit_signal(text: str) -> bool:
    """Return True when *text* carries an explicit machine exit signal."""
    return bool(EXIT_SIGNAL_RE.search(text)) or COMPLETION_TAG in text


def determine_confidence(completion: float, stuck: float) -> Confidence:
    """Derive confidence from how far apart and how extreme the scores are."""
    if (completion >= 0.8 and stuck < 0.2) or (stuck >= 0.8 and completion < 0.2):
        return Confidence.HIGH
    if completion >= 0.5 and stuck >= 0.5:
        return Confidence.LOW
    if completion < 0.3 and stuck < 0.3:
        return Confidence.LOW
    return Confidence.MEDIUM


def analyze_output(text: str, rules: tuple[ScoringRule, ...] = SCORING_RULES) -> OutputAnalysis:
    """Fold *rules* over *text* into capped per-category scores."""
    totals = {category: 0.0 for category in RuleCategory}
    matched: dict[RuleCategory, list[str]] = {category: [] for category in RuleCategory}
    for rule in rules:
        match = rule.pattern.search(text)
        if match is None:
            continue
        totals[rule.category] += rule.weight
        matched[rule.category].append(match.group(0))

    completion = min(1.0, totals[RuleCategory.COMPLETION])
    stuck = min(1.0, totals[RuleCategory.STUCK])
    return OutputAnalysis(
        completion_score=completion,
        stuck_score=stuck,
        progress_score=min(1.0, totals[RuleCategory.PROGRESS]),
        confidence=determine_confidence(completion, stuck),
        completion_indicators=tuple(matched[RuleCategory.COMPLETION]),
        stuck_indicators=tuple(matched[RuleCategory.STUCK]),
        progress_indicators=tuple(matched[RuleCategory.PROGRESS]),
        has_exit_signal=has_exit_signal(text),
    )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _contains_phrase(text: str, phrases: tuple[str, ...]) -> str | None:
    upper = text.upper()
    for phrase in phrases:
        if phrase.upper() in upper:
            return phrase
    return None


def classify(output: str, policy: CompletionPolicy | None = None) -> Classification:
    """Return the verdict for one round of agent *output*.

    Checks, first match wins:

    1. the policy's custom completion token
    2. the ``<promise>COMPLETE</promise>`` tag
    3. ``EXIT_SIGNAL: true`` unless the policy requires corroboration
    4. legacy completion phrases (skipped when an exit signal is required)
    5. blocked phrases
    6. weighted scoring
    7. continue
    """
    policy = policy or CompletionPolicy()
    text = output or ""

    token = (policy.completion_token or "").strip()
    if token and token in text:
        return Classification(Verdict.DONE, f"completion token {token!r} found")

    if COMPLETION_TAG in text:
        return Classification(Verdict.DONE, "completion tag found")

    if not policy.require_exit_signal:
        if EXIT_SIGNAL_RE.search(text):
            return Classification(Verdict.DONE, "exit signal found")
        phrase = _contains_phrase(text, LEGACY_COMPLETION_PHRASES)
        if phrase:
            return Classification(Verdict.DONE, f"completion marker {phrase!r} found")

    phrase = _contains_phrase(text, BLOCKED_PHRASES)
    if phrase:
        return Classification(Verdict.BLOCKED, f"blocked marker {phrase!r} found")

    analysis = analyze_output(text)
    if analysis.stuck_score >= STUCK_SCORE_THRESHOLD and analysis.confidence is not Confidence.LOW:
        reason = "agent appears stuck: " + ", ".join(analysis.stuck_indicators[:3])
        return Classification(Verdict.BLOCKED, reason, analysis)

    indicators = len(analysis.completion_indicators)
    enough = indicators >= policy.min_completion_indicators
    if policy.require_exit_signal:
        if analysis.has_exit_signal and enough:
            return Classification(
                Verdict.DONE,
                f"exit signal with {indicators} completion indicator(s)",
                analysis,
            )
        return Classification(Verdict.CONTINUE, "", analysis)

    if analysis.completion_score >= DONE_SCORE_THRESHOLD and enough:
        return Classification(
            Verdict.DONE,
            f"completion score {analysis.completion_score:.2f} "
            f"({analysis.confidence.value} confidence)",
            analysis,
        )
    return Classification(Verdict.CONTINUE, "", analysis)


def classify_block(text: str) -> BlockKind:
    """Best-effort guess at why a round was blocked."""
    if _RATE_LIMIT_RE.search(text or ""):
        return BlockKind.RATE_LIMIT
    if _PERMISSION_RE.search(text or ""):
        return BlockKind.PERMISSION
    return BlockKind.GENERIC


def block_hint(kind: BlockKind) -> str:
    """Return a one-line suggestion for a blocked round."""
    if kind is BlockKind.RATE_LIMIT:
        return "The agent hit a provider rate or usage limit; wait and resume later."
    if kind is BlockKind.PERMISSION:
        return "The agent lacks permission for an action; rerun with --auto or adjust its settings."
    return "The agent reported it cannot continue; review the log and clarify the task."
