"""Structured output protocol for agent responses.

Agents are asked to answer with a JSON document (optionally inside a fenced
```json block). The document is validated with pydantic; when it is missing or
invalid the caller decides, through the manifold policy, whether to degrade to
a heuristic summary or to surface the parse error.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fama.errors import OutputParseError
from fama.phases import Phase

CURRENT_SCHEMA_VERSION = "1.0.0"
MAX_SUMMARY_LENGTH = 200

ArtifactType = Literal["file", "decision", "task", "issue", "reference"]
Reversibility = Literal["easy", "moderate", "hard", "irreversible"]
Severity = Literal["critical", "high", "medium", "low", "info"]
ResultStatus = Literal["success", "partial", "blocked", "error"]
ManifoldPolicy = Literal["always", "structured_only"]

_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)\s*```")
_ARTIFACT_PATTERNS = [
    re.compile(
        r"(?:wrote|created|updated|saved|modified|generated)\s+[`\"']?([^\s`\"']+\.[a-z]{1,5})[`\"']?",
        re.IGNORECASE,
    ),
    re.compile(r"(?:file|path|output):\s*[`\"']?([^\s`\"']+\.[a-z]{1,5})[`\"']?", re.IGNORECASE),
    re.compile(r"```[a-z]*\s*\n?(?://|#|<!--)\s*([^\s]+\.[a-z]{1,5})", re.IGNORECASE),
]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Artifact(_Model):
    type: ArtifactType
    path: str | None = None
    content: str | None = None
    hash: str | None = None
    metadata: dict[str, Any] | None = None


class Decision(_Model):
    id: str
    decision: str
    rationale: str
    alternatives_considered: list[str] = Field(alias="alternativesConsidered")
    reversibility: Reversibility


class Issue(_Model):
    id: str
    description: str
    severity: Severity
    location: str | None = None
    suggested_fix: str | None = Field(default=None, alias="suggestedFix")


class ResultPayload(_Model):
    status: ResultStatus
    summary: str = Field(max_length=MAX_SUMMARY_LENGTH)
    content: Any = None


class HandoffInfo(_Model):
    next_phase: Phase | None = Field(alias="nextPhase")
    required_context: list[str] = Field(alias="requiredContext")
    blocking_issues: list[str] = Field(alias="blockingIssues")
    suggested_agents: list[str] = Field(alias="suggestedAgents")


class OutputMeta(_Model):
    agent: str
    skill: str | None
    phase: Phase
    timestamp: str
    tokens_used: float = Field(alias="tokensUsed")
    model: str | None = None
    duration_ms: float | None = Field(default=None, alias="durationMs")


class StructuredAgentOutput(_Model):
    schema_version: str = Field(alias="schemaVersion")
    meta: OutputMeta
    result: ResultPayload
    artifacts: list[Artifact]
    decisions: list[Decision]
    issues: list[Issue]
    handoff: HandoffInfo

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(slots=True)
class ParseResult:
    output: StructuredAgentOutput | None = None
    error: OutputParseError | None = None

    @property
    def success(self) -> bool:
        return self.output is not None


def truncate_summary(summary: str) -> str:
    if len(summary) <= MAX_SUMMARY_LENGTH:
        return summary
    window = summary[: MAX_SUMMARY_LENGTH - 3]
    last_space = window.rfind(" ")
    if last_space > MAX_SUMMARY_LENGTH * 0.7:
        return window[:last_space] + "..."
    return window + "..."


def _empty_handoff() -> HandoffInfo:
    return HandoffInfo(next_phase=None, required_context=[], blocking_issues=[], suggested_agents=[])


def create_success_output(
    agent: str, phase: Phase, summary: str, content: Any = None
) -> StructuredAgentOutput:
    return StructuredAgentOutput(
        schema_version=CURRENT_SCHEMA_VERSION,
        meta=OutputMeta(agent=agent, skill=None, phase=phase, timestamp=_utcnow_iso(), tokens_used=0),
        result=ResultPayload(status="success", summary=truncate_summary(summary), content=content),
        artifacts=[],
        decisions=[],
        issues=[],
        handoff=_empty_handoff(),
    )


def create_error_output(agent: str, phase: Phase, error_message: str) -> StructuredAgentOutput:
    handoff = _empty_handoff()
    handoff.blocking_issues.append("execution-error")
    return StructuredAgentOutput(
        schema_version=CURRENT_SCHEMA_VERSION,
        meta=OutputMeta(agent=agent, skill=None, phase=phase, timestamp=_utcnow_iso(), tokens_used=0),
        result=ResultPayload(
            status="error",
            summary=truncate_summary(error_message),
            content={"error": error_message},
        ),
        artifacts=[],
        decisions=[],
        issues=[Issue(id="execution-error", description=error_message, severity="critical")],
        handoff=handoff,
    )


def add_issue(output: StructuredAgentOutput, issue: Issue) -> None:
    output.issues.append(issue)
    if issue.severity in {"critical", "high"}:
        output.handoff.blocking_issues.append(issue.id)


def _parse_and_validate(text: str) -> ParseResult:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        return ParseResult(error=OutputParseError(str(exc), kind="json"))
    try:
        return ParseResult(output=StructuredAgentOutput.model_validate(parsed))
    except ValidationError as exc:
        issues = [
            {"path": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return ParseResult(
            error=OutputParseError(
                "Output does not match StructuredAgentOutput schema",
                kind="validation",
                issues=issues,
            )
        )


def parse_structured_output(text: str) -> ParseResult:
    match = _JSON_BLOCK.search(text)
    if match:
        result = _parse_and_validate(match.group(1))
        if result.success or (result.error is not None and result.error.kind == "validation"):
            return result
    return _parse_and_validate(text)


def extract_summary(result: str, max_length: int = 500) -> str:
    if not result:
        return ""
    trimmed = result.strip()
    if len(trimmed) <= max_length:
        return trimmed
    cut = trimmed[:max_length]
    break_point = max(cut.rfind("."), cut.rfind("\n"))
    if break_point > max_length * 0.6:
        return trimmed[: break_point + 1].strip()
    return cut.strip() + "..."


def extract_artifacts(result: str) -> list[str]:
    """Find file paths the agent reports having written or touched."""
    if not result:
        return []
    artifacts: dict[str, None] = {}
    for pattern in _ARTIFACT_PATTERNS:
        for match in pattern.finditer(result):
            path = match.group(1)
            if path and not path.startswith("http") and "..." not in path and len(path) < 200:
                artifacts.setdefault(path, None)
    return list(artifacts)


def build_output_from_result(
    result_text: str | None,
    phase: Phase,
    agent: str,
    policy: ManifoldPolicy = "always",
) -> StructuredAgentOutput:
    raw = result_text or ""
    parsed = parse_structured_output(raw)
    if parsed.output is not None:
        parsed.output.meta.phase = phase
        return parsed.output

    if policy == "structured_only":
        raise parsed.error or OutputParseError("No structured output found", kind="json")

    summary = extract_summary(raw, MAX_SUMMARY_LENGTH) if raw else "No output produced."
    output = create_success_output(agent, phase, summary, {"note": "Unstructured output"})
    for path in extract_artifacts(raw):
        output.artifacts.append(Artifact(type="file", path=path))
    return output
