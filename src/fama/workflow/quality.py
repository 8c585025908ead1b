from __future__ import annotations

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from fama.config import QualityConfig
from fama.phases import Phase
from fama.workflow.parallel import ParallelExecutionResult

_FLAGS = re.IGNORECASE

_TEST_FULL = re.compile(r"100%\s*coverage|all\s*tests?\s*pass", _FLAGS)
_TEST_COVERAGE = re.compile(r"(\d+)%\s*coverage", _FLAGS)
_TEST_ADDED = re.compile(r"tests?\s*(?:added|written|created)", _FLAGS)
_TEST_FAILING = re.compile(r"fail|error|broken", _FLAGS)
_TEST_MISSING = re.compile(r"no\s*tests?|skip", _FLAGS)

_SEC_SEVERE = re.compile(r"critical|high\s*severity", _FLAGS)
_SEC_MEDIUM = re.compile(r"medium\s*severity", _FLAGS)
_SEC_LOW = re.compile(r"low\s*severity|informational", _FLAGS)
_SEC_CLEAN = re.compile(r"no\s*(?:vulnerabilit|issue|finding)|clean|secure", _FLAGS)
_SEC_DONE = re.compile(r"audit\s*(?:complete|pass)", _FLAGS)

_REVIEW_APPROVED = re.compile(r"lgtm|approv|looks\s*good", _FLAGS)
_REVIEW_MAJOR = re.compile(r"major\s*(?:issue|concern|problem)|block", _FLAGS)
_REVIEW_MINOR = re.compile(r"minor\s*(?:issue|suggestion)|nit", _FLAGS)
_REVIEW_DONE = re.compile(r"review\s*complete", _FLAGS)


@dataclass(slots=True)
class QualityFactor:
    name: str
    weight: float
    score: float
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "weight": self.weight, "score": self.score, "reason": self.reason}


@dataclass(slots=True)
class QualityScore:
    phase: Phase
    score: int
    breakdown: list[QualityFactor] = field(default_factory=list)
    passed: bool = False
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "score": self.score,
            "breakdown": [factor.to_dict() for factor in self.breakdown],
            "passed": self.passed,
            "recommendations": list(self.recommendations),
        }


@dataclass(slots=True)
class LoopBackDecision:
    loop_back: bool
    reason: str


def analyze_test_result(result: str) -> tuple[int, str]:
    if not result:
        return 0, "No test output available"
    if _TEST_FULL.search(result):
        return 100, "Full test coverage, all tests passing"
    coverage = _TEST_COVERAGE.search(result)
    if coverage:
        value = int(coverage.group(1))
        return value, f"Test coverage: {value}%"
    if _TEST_ADDED.search(result):
        return 75, "Tests added"
    if _TEST_FAILING.search(result):
        return 30, "Tests failing or errors detected"
    if _TEST_MISSING.search(result):
        return 20, "No tests or tests skipped"
    return 60, "Test execution status unclear"


def analyze_security_result(result: str) -> tuple[int, str]:
    if not result:
        return 50, "No security audit output available"
    if _SEC_SEVERE.search(result):
        return 20, "Critical or high severity issues found"
    if _SEC_MEDIUM.search(result):
        return 50, "Medium severity issues found"
    if _SEC_LOW.search(result):
        return 75, "Only low severity or informational issues"
    if _SEC_CLEAN.search(result):
        return 100, "No security issues found"
    if _SEC_DONE.search(result):
        return 85, "Security audit completed"
    return 60, "Security status unclear"


def analyze_review_result(result: str) -> tuple[int, str]:
    if not result:
        return 50, "No code review output available"
    if _REVIEW_APPROVED.search(result):
        return 100, "Code review approved"
    if _REVIEW_MAJOR.search(result):
        return 30, "Major issues requiring attention"
    if _REVIEW_MINOR.search(result):
        return 75, "Minor suggestions only"
    if _REVIEW_DONE.search(result):
        return 70, "Review completed"
    return 60, "Review status unclear"


_AGENT_FACTORS = (
    # factor, agent, analyzer, missing label, low-score recommendation, absent recommendation
    ("testing", "test-writer", analyze_test_result, "Test writer",
     "Improve test coverage and ensure all tests pass", "Run test writer agent"),
    ("security", "security-auditor", analyze_security_result, "Security auditor",
     "Address security vulnerabilities before proceeding", "Run security audit"),
    ("review", "code-reviewer", analyze_review_result, "Code reviewer",
     "Address code review feedback", "Get code review"),
)


def assess_validation_quality(
    results: Sequence[ParallelExecutionResult],
    config: QualityConfig | None = None,
) -> QualityScore:
    """Score the validation fan-out on completion, testing, security and review."""
    config = config or QualityConfig()
    weights = config.weights.to_dict()
    factors: list[QualityFactor] = []
    recommendations: list[str] = []

    success_count = sum(1 for result in results if result.status == "success")
    completion = success_count / len(results) * 100 if results else 0.0
    factors.append(
        QualityFactor(
            name="completion",
            weight=weights["completion"],
            score=completion,
            reason=f"{success_count}/{len(results)} agents completed successfully",
        )
    )
    if completion < 100:
        failed = [result.agent for result in results if result.status == "error"]
        recommendations.append(f"Fix failed agents: {', '.join(failed)}")

    for name, agent, analyzer, label, low_hint, absent_hint in _AGENT_FACTORS:
        match = next((result for result in results if result.agent == agent), None)
        if match is not None and match.status == "success":
            score, reason = analyzer(match.result or "")
            factors.append(QualityFactor(name=name, weight=weights[name], score=score, reason=reason))
            if score < 70:
                recommendations.append(low_hint)
            continue
        factors.append(
            QualityFactor(
                name=name,
                weight=weights[name],
                score=0 if match is not None else 50,
                reason=f"{label} failed" if match is not None else f"{label} not executed",
            )
        )
        recommendations.append(absent_hint)

    total_weight = sum(factor.weight for factor in factors)
    weighted = (
        sum(factor.weight / total_weight * factor.score for factor in factors)
        if total_weight > 0
        else 0.0
    )
    final_score = math.floor(weighted + 0.5)
    passed = final_score >= config.minimum_score
    return QualityScore(
        phase="V",
        score=final_score,
        breakdown=factors,
        passed=passed,
        recommendations=[] if passed else recommendations,
    )


def should_loop_back(
    score: QualityScore,
    current_loops: int,
    config: QualityConfig | None = None,
) -> LoopBackDecision:
    config = config or QualityConfig()
    if score.passed:
        return LoopBackDecision(loop_back=False, reason="Quality threshold met")
    if not config.loop_back_on_failure:
        return LoopBackDecision(loop_back=False, reason="Loop-back disabled in configuration")
    if current_loops >= config.max_loops:
        return LoopBackDecision(
            loop_back=False, reason=f"Maximum loop-backs ({config.max_loops}) reached"
        )
    return LoopBackDecision(
        loop_back=True,
        reason=f"Quality score {score.score} below threshold {config.minimum_score}",
    )


def format_quality_score(score: QualityScore) -> str:
    lines = [
        "## Quality Assessment\n",
        f"**Overall Score:** {score.score}/100 {'✓ PASSED' if score.passed else '✗ FAILED'}",
        "",
        "### Breakdown",
    ]
    for factor in score.breakdown:
        icon = "✓" if factor.score >= 70 else "⚠" if factor.score >= 50 else "✗"
        lines.append(
            f"- {icon} **{factor.name}** ({round(factor.weight * 100)}%): "
            f"{round(factor.score)}/100"
        )
        lines.append(f"  {factor.reason}")
    if score.recommendations:
        lines.append("")
        lines.append("### Recommendations")
        lines.extend(f"- {recommendation}" for recommendation in score.recommendations)
    return "\n".join(lines)
