"""Context manifold: the content-addressed record of what each phase produced.

The manifold keeps one entry per agent output, grouped by phase, plus a global
artifact registry keyed by a short content hash. Downstream phases read a
budgeted, relevance-scored slice of it instead of raw transcripts.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fama.errors import ManifoldError
from fama.output import StructuredAgentOutput
from fama.phases import PHASE_ORDER, Phase, phase_index
from fama.state.status import WorkflowState
from fama.tokens import estimate_tokens

logger = logging.getLogger(__name__)

MANIFOLD_VERSION = "1.0.0"
MANIFOLD_FILE = Path(".fama") / "context-manifold.json"

RELEVANT_SOURCES: dict[Phase, tuple[Phase, ...]] = {
    "P": (),
    "R": ("P",),
    "E": ("P", "R"),
    "V": ("E", "R"),
    "C": ("V", "E"),
}

BLOCKING_SEVERITIES = frozenset({"critical", "high"})
KEY_REVERSIBILITY = frozenset({"hard", "irreversible"})


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _hours_since(timestamp: str, now: datetime) -> float | None:
    try:
        return (now - _parse_timestamp(timestamp)).total_seconds() / 3600
    except ValueError:
        return None


def compute_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:8]


@dataclass(slots=True)
class ManifoldDecision:
    id: str
    decision: str
    rationale: str
    reversibility: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "decision": self.decision,
            "rationale": self.rationale,
            "reversibility": self.reversibility,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifoldDecision:
        return cls(
            id=str(data["id"]),
            decision=str(data["decision"]),
            rationale=str(data.get("rationale", "")),
            reversibility=str(data.get("reversibility", "easy")),
        )


@dataclass(slots=True)
class ManifoldIssue:
    id: str
    description: str
    severity: str
    resolved: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "severity": self.severity,
            "resolved": self.resolved,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifoldIssue:
        return cls(
            id=str(data["id"]),
            description=str(data["description"]),
            severity=str(data.get("severity", "info")),
            resolved=bool(data.get("resolved", False)),
        )


@dataclass(slots=True)
class ArtifactEntry:
    hash: str
    type: str
    source_phase: Phase
    source_agent: str
    created_at: str
    path: str | None = None
    content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "hash": self.hash,
            "type": self.type,
            "sourcePhase": self.source_phase,
            "sourceAgent": self.source_agent,
            "createdAt": self.created_at,
        }
        if self.path is not None:
            payload["path"] = self.path
        if self.content is not None:
            payload["content"] = self.content
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactEntry:
        return cls(
            hash=str(data["hash"]),
            type=str(data.get("type", "file")),
            source_phase=data["sourcePhase"],
            source_agent=str(data.get("sourceAgent", "")),
            created_at=str(data.get("createdAt", "")),
            path=data.get("path"),
            content=data.get("content"),
        )


@dataclass(slots=True)
class PhaseManifoldEntry:
    agent: str
    timestamp: str
    summary: str
    artifact_keys: list[str] = field(default_factory=list)
    decisions: list[ManifoldDecision] = field(default_factory=list)
    issues: list[ManifoldIssue] = field(default_factory=list)
    estimated_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "timestamp": self.timestamp,
            "summary": self.summary,
            "artifactKeys": list(self.artifact_keys),
            "decisions": [decision.to_dict() for decision in self.decisions],
            "issues": [issue.to_dict() for issue in self.issues],
            "estimatedTokens": self.estimated_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseManifoldEntry:
        return cls(
            agent=str(data["agent"]),
            timestamp=str(data["timestamp"]),
            summary=str(data.get("summary", "")),
            artifact_keys=[str(key) for key in data.get("artifactKeys") or []],
            decisions=[ManifoldDecision.from_dict(item) for item in data.get("decisions") or []],
            issues=[ManifoldIssue.from_dict(item) for item in data.get("issues") or []],
            estimated_tokens=int(data.get("estimatedTokens", 0)),
        )


@dataclass(slots=True)
class StackInfo:
    languages: list[str] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)
    databases: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "languages": list(self.languages),
            "frameworks": list(self.frameworks),
            "databases": list(self.databases),
            "tools": list(self.tools),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StackInfo:
        return cls(
            languages=list(data.get("languages") or []),
            frameworks=list(data.get("frameworks") or []),
            databases=list(data.get("databases") or []),
            tools=list(data.get("tools") or []),
        )


@dataclass(slots=True)
class CodebaseSummary:
    architecture: str = ""
    entry_points: list[str] = field(default_factory=list)
    key_modules: list[str] = field(default_factory=list)
    test_framework: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "architecture": self.architecture,
            "entryPoints": list(self.entry_points),
            "keyModules": list(self.key_modules),
        }
        if self.test_framework:
            payload["testFramework"] = self.test_framework
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CodebaseSummary:
        return cls(
            architecture=str(data.get("architecture", "")),
            entry_points=list(data.get("entryPoints") or []),
            key_modules=list(data.get("keyModules") or []),
            test_framework=data.get("testFramework"),
        )


@dataclass(slots=True)
class ManifoldGlobals:
    workflow_state: dict[str, Any] | None = None
    project_stack: StackInfo | None = None
    codebase_summary: CodebaseSummary | None = None
    active_constraints: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "workflowState": self.workflow_state,
            "activeConstraints": list(self.active_constraints),
        }
        if self.project_stack is not None:
            payload["projectStack"] = self.project_stack.to_dict()
        if self.codebase_summary is not None:
            payload["codebaseSummary"] = self.codebase_summary.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifoldGlobals:
        stack = data.get("projectStack")
        summary = data.get("codebaseSummary")
        return cls(
            workflow_state=data.get("workflowState"),
            project_stack=StackInfo.from_dict(stack) if isinstance(stack, dict) else None,
            codebase_summary=CodebaseSummary.from_dict(summary) if isinstance(summary, dict) else None,
            active_constraints=[str(item) for item in data.get("activeConstraints") or []],
        )


@dataclass(slots=True)
class SelectedContext:
    entries: list[PhaseManifoldEntry] = field(default_factory=list)
    artifact_keys: list[str] = field(default_factory=list)
    blocking_issues: list[ManifoldIssue] = field(default_factory=list)
    key_decisions: list[ManifoldDecision] = field(default_factory=list)
    total_tokens: int = 0
    skipped_count: int = 0


@dataclass(slots=True)
class ContextManifold:
    workflow_name: str
    version: str = MANIFOLD_VERSION
    phases: dict[Phase, list[PhaseManifoldEntry]] = field(
        default_factory=lambda: {phase: [] for phase in PHASE_ORDER}
    )
    globals: ManifoldGlobals = field(default_factory=ManifoldGlobals)
    artifacts: dict[str, ArtifactEntry] = field(default_factory=dict)
    updated_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def create(cls, workflow_name: str, workflow_state: WorkflowState | None = None) -> ContextManifold:
        return cls(
            workflow_name=workflow_name,
            globals=ManifoldGlobals(
                workflow_state=workflow_state.to_dict() if workflow_state else None
            ),
        )

    def _touch(self) -> None:
        self.updated_at = _utcnow_iso()

    def _entries(
        self, phases: tuple[Phase, ...] = PHASE_ORDER
    ) -> Iterator[tuple[Phase, PhaseManifoldEntry]]:
        for phase in phases:
            for entry in self.phases[phase]:
                yield phase, entry

    def add_output(self, phase: Phase, output: StructuredAgentOutput) -> PhaseManifoldEntry:
        now = _utcnow_iso()
        try:
            produced_at = _parse_timestamp(output.meta.timestamp).isoformat()
        except (TypeError, ValueError):
            produced_at = now
        artifact_keys: list[str] = []
        for artifact in output.artifacts:
            source = artifact.content if artifact.content is not None else artifact.path
            key = artifact.hash or compute_hash(source or "")
            if key not in self.artifacts:
                self.artifacts[key] = ArtifactEntry(
                    hash=key,
                    type=artifact.type,
                    path=artifact.path,
                    content=artifact.content,
                    source_phase=phase,
                    source_agent=output.meta.agent,
                    created_at=now,
                )
            artifact_keys.append(key)

        decisions = [
            ManifoldDecision(
                id=decision.id,
                decision=decision.decision,
                rationale=decision.rationale,
                reversibility=decision.reversibility,
            )
            for decision in output.decisions
        ]
        issues = [
            ManifoldIssue(id=issue.id, description=issue.description, severity=issue.severity)
            for issue in output.issues
        ]
        token_source = " ".join(
            [
                output.result.summary,
                *(f"{decision.decision} {decision.rationale}" for decision in decisions),
                *(issue.description for issue in issues),
            ]
        )
        entry = PhaseManifoldEntry(
            agent=output.meta.agent,
            timestamp=produced_at,
            summary=output.result.summary,
            artifact_keys=artifact_keys,
            decisions=decisions,
            issues=issues,
            estimated_tokens=estimate_tokens(token_source),
        )
        self.phases[phase].append(entry)
        self._touch()
        return entry

    def select_for_phase(
        self,
        target: Phase,
        budget: int,
        *,
        now: datetime | None = None,
    ) -> SelectedContext:
        """Pick the most relevant earlier-phase entries that fit in ``budget`` tokens.

        Blocking issues and hard-to-reverse decisions are always returned,
        whatever the budget.
        """
        now = now or datetime.now(UTC)
        previous = PHASE_ORDER[: phase_index(target)]
        candidates = list(self._entries(previous))
        selected = SelectedContext()

        for _, entry in candidates:
            for issue in entry.issues:
                if issue.severity in BLOCKING_SEVERITIES and not issue.resolved:
                    selected.blocking_issues.append(issue)
        for _, entry in candidates:
            for decision in entry.decisions:
                if decision.reversibility in KEY_REVERSIBILITY:
                    selected.key_decisions.append(decision)

        scored = sorted(
            candidates,
            key=lambda item: -_score_entry(item[1], item[0], target, now),
        )
        for _, entry in scored:
            if selected.total_tokens + entry.estimated_tokens <= budget:
                selected.entries.append(entry)
                selected.artifact_keys.extend(entry.artifact_keys)
                selected.total_tokens += entry.estimated_tokens
            else:
                selected.skipped_count += 1
        return selected

    def format_for_prompt(self, selected: SelectedContext) -> str:
        lines = ["[CONTEXT_MANIFOLD]"]
        if selected.blocking_issues:
            lines.append("BLOCKING:")
            for issue in selected.blocking_issues:
                lines.append(f"  !{issue.severity.upper()}: {issue.description}")
        if selected.key_decisions:
            lines.append("DECISIONS:")
            for decision in selected.key_decisions:
                lines.append(f"  [{decision.id}] {decision.decision}")
                lines.append(f"    → {decision.rationale}")
        if selected.entries:
            lines.append("PREV_OUTPUTS:")
            for entry in selected.entries:
                lines.append(f"  {entry.agent} ({entry.timestamp.split('T')[0]}): {entry.summary}")

        paths: list[str] = []
        for key in dict.fromkeys(selected.artifact_keys):
            artifact = self.artifacts.get(key)
            if artifact is not None and artifact.path:
                paths.append(artifact.path)
        if paths:
            lines.append(f"ARTIFACTS: {', '.join(paths)}")

        if selected.skipped_count > 0:
            lines.append(f"<!-- {selected.skipped_count} entries omitted due to token budget -->")
        return "\n".join(lines)

    def context_for_phase(self, target: Phase, budget: int) -> tuple[str, int]:
        selected = self.select_for_phase(target, budget)
        return self.format_for_prompt(selected), len(selected.entries)

    def update_stack_info(self, stack: StackInfo) -> None:
        self.globals.project_stack = stack
        self._touch()

    def update_codebase_summary(self, summary: CodebaseSummary) -> None:
        self.globals.codebase_summary = summary
        self._touch()

    def add_constraint(self, constraint: str) -> bool:
        if constraint in self.globals.active_constraints:
            return False
        self.globals.active_constraints.append(constraint)
        self._touch()
        return True

    def resolve_issue(self, issue_id: str) -> int:
        resolved = 0
        for _, entry in self._entries():
            for issue in entry.issues:
                if issue.id == issue_id and not issue.resolved:
                    issue.resolved = True
                    resolved += 1
        self._touch()
        return resolved

    def unresolved_issues(self) -> list[ManifoldIssue]:
        return [issue for _, entry in self._entries() for issue in entry.issues if not issue.resolved]

    def all_decisions(self) -> list[ManifoldDecision]:
        return [decision for _, entry in self._entries() for decision in entry.decisions]

    def get_artifact(self, key: str) -> ArtifactEntry | None:
        return self.artifacts.get(key)

    def file_artifacts(self) -> list[ArtifactEntry]:
        return [entry for entry in self.artifacts.values() if entry.type == "file" and entry.path]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "workflowName": self.workflow_name,
            "phases": {
                phase: [entry.to_dict() for entry in self.phases[phase]] for phase in PHASE_ORDER
            },
            "globals": self.globals.to_dict(),
            "artifacts": {key: entry.to_dict() for key, entry in self.artifacts.items()},
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextManifold:
        raw_phases = data.get("phases") or {}
        return cls(
            workflow_name=str(data.get("workflowName", "")),
            version=str(data.get("version", MANIFOLD_VERSION)),
            phases={
                phase: [PhaseManifoldEntry.from_dict(item) for item in raw_phases.get(phase) or []]
                for phase in PHASE_ORDER
            },
            globals=ManifoldGlobals.from_dict(data.get("globals") or {}),
            artifacts={
                str(key): ArtifactEntry.from_dict(value)
                for key, value in (data.get("artifacts") or {}).items()
            },
            updated_at=str(data.get("updatedAt") or _utcnow_iso()),
        )


def _score_entry(entry: PhaseManifoldEntry, source: Phase, target: Phase, now: datetime) -> float:
    score = 0.0
    hours_since = _hours_since(entry.timestamp, now)
    if hours_since is not None:
        score += max(0.0, 10 - hours_since)
    if source in RELEVANT_SOURCES[target]:
        score += 20
    score += 5 * sum(1 for issue in entry.issues if not issue.resolved)
    score += 3 * len(entry.decisions)
    return score


def convert_legacy_output(
    agent: str,
    result_summary: str,
    timestamp: str,
) -> PhaseManifoldEntry:
    """Build a manifold entry from a run summary written before manifolds existed."""
    return PhaseManifoldEntry(
        agent=agent,
        timestamp=timestamp,
        summary=result_summary[:100],
        estimated_tokens=estimate_tokens(result_summary),
    )


@dataclass(slots=True)
class LoadResult:
    manifold: ContextManifold | None = None
    error: ManifoldError | None = None


class ManifoldStore:
    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.path = self.project_dir / MANIFOLD_FILE

    def load_with_details(self) -> LoadResult:
        file_path = str(self.path)
        if not self.path.exists():
            return LoadResult(
                error=ManifoldError(
                    "Manifold file not found", code="FILE_NOT_FOUND", file_path=file_path
                )
            )
        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return LoadResult(
                error=ManifoldError(
                    f"Failed to read manifold: {exc}", code="READ_ERROR", file_path=file_path
                )
            )
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            return LoadResult(
                error=ManifoldError(
                    f"Invalid JSON in manifold: {exc}", code="PARSE_ERROR", file_path=file_path
                )
            )
        missing = [
            key for key in ("version", "phases", "globals")
            if not isinstance(payload, dict) or payload.get(key) in (None, "")
        ]
        if missing:
            return LoadResult(
                error=ManifoldError(
                    f"Manifold is missing required fields: {', '.join(missing)}",
                    code="VALIDATION_ERROR",
                    file_path=file_path,
                )
            )
        try:
            return LoadResult(manifold=ContextManifold.from_dict(payload))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            return LoadResult(
                error=ManifoldError(
                    f"Malformed manifold entry: {exc}", code="VALIDATION_ERROR", file_path=file_path
                )
            )

    def load(self) -> ContextManifold | None:
        result = self.load_with_details()
        if result.error is not None:
            if result.error.code == "FILE_NOT_FOUND":
                return None
            raise result.error
        return result.manifold

    def save(self, manifold: ContextManifold) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ManifoldError(
                f"Failed to create manifold directory: {exc}",
                code="MKDIR_ERROR",
                file_path=str(self.path.parent),
            ) from exc
        manifold.updated_at = _utcnow_iso()
        try:
            self.path.write_text(
                json.dumps(manifold.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
            )
        except OSError as exc:
            raise ManifoldError(
                f"Failed to write manifold: {exc}", code="WRITE_ERROR", file_path=str(self.path)
            ) from exc

    def ensure(self, workflow_state: WorkflowState) -> ContextManifold:
        manifold = self.load()
        if manifold is None:
            manifold = ContextManifold.create(workflow_state.name, workflow_state)
            logger.debug("Created context manifold for %s", workflow_state.name)
        else:
            manifold.globals.workflow_state = workflow_state.to_dict()
        self.save(manifold)
        return manifold

    def record_output(
        self, manifold: ContextManifold, phase: Phase, output: StructuredAgentOutput
    ) -> PhaseManifoldEntry:
        entry = manifold.add_output(phase, output)
        self.save(manifold)
        return entry
