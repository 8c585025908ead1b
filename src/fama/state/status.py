from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import yaml

from fama.errors import WorkflowStateError
from fama.phases import PHASE_ORDER, Phase, Scale, phases_for_scale

logger = logging.getLogger(__name__)

PhaseStatusValue = Literal["pending", "in_progress", "completed", "skipped"]
HistoryAction = Literal["started", "completed", "skipped"]

STATUS_FILE = Path(".fama") / "workflow" / "status.yaml"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class PhaseStatus:
    status: PhaseStatusValue = "pending"
    started_at: str | None = None
    completed_at: str | None = None
    outputs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.started_at:
            payload["startedAt"] = self.started_at
        if self.completed_at:
            payload["completedAt"] = self.completed_at
        if self.outputs:
            payload["outputs"] = list(self.outputs)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseStatus:
        return cls(
            status=data.get("status", "pending"),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            outputs=[str(item) for item in data.get("outputs") or []],
        )


@dataclass(slots=True)
class HistoryEntry:
    timestamp: str
    phase: Phase
    action: HistoryAction
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "phase": self.phase,
            "action": self.action,
        }
        if self.notes:
            payload["notes"] = self.notes
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            timestamp=str(data["timestamp"]),
            phase=data["phase"],
            action=data["action"],
            notes=data.get("notes"),
        )


@dataclass(slots=True)
class WorkflowState:
    name: str
    scale: Scale
    current_phase: Phase
    phases: dict[Phase, PhaseStatus]
    history: list[HistoryEntry] = field(default_factory=list)
    started_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def create(cls, name: str, scale: Scale) -> WorkflowState:
        active = phases_for_scale(scale)
        now = _utcnow_iso()
        phases: dict[Phase, PhaseStatus] = {}
        for phase in PHASE_ORDER:
            if phase not in active:
                phases[phase] = PhaseStatus(status="skipped")
            elif phase == active[0]:
                phases[phase] = PhaseStatus(status="in_progress", started_at=now)
            else:
                phases[phase] = PhaseStatus(status="pending")
        return cls(
            name=name,
            scale=Scale(scale),
            current_phase=active[0],
            phases=phases,
            history=[HistoryEntry(timestamp=now, phase=active[0], action="started")],
            started_at=now,
        )

    @property
    def active_phases(self) -> list[Phase]:
        return [phase for phase in PHASE_ORDER if self.phases[phase].status != "skipped"]

    def record(self, phase: Phase, action: HistoryAction, notes: str | None = None) -> HistoryEntry:
        entry = HistoryEntry(timestamp=_utcnow_iso(), phase=phase, action=action, notes=notes)
        self.history.append(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "scale": int(self.scale),
            "currentPhase": self.current_phase,
            "phases": {phase: self.phases[phase].to_dict() for phase in PHASE_ORDER},
            "history": [entry.to_dict() for entry in self.history],
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowState:
        raw_phases = data.get("phases") or {}
        phases = {
            phase: PhaseStatus.from_dict(raw_phases.get(phase) or {"status": "skipped"})
            for phase in PHASE_ORDER
        }
        current = data["currentPhase"]
        if current not in PHASE_ORDER:
            raise WorkflowStateError(f"Unknown current phase: {current!r}")
        return cls(
            name=str(data["name"]),
            scale=Scale(int(data["scale"])),
            current_phase=current,
            phases=phases,
            history=[HistoryEntry.from_dict(item) for item in data.get("history") or []],
            started_at=str(data.get("startedAt") or _utcnow_iso()),
        )


class StatusStore:
    """Persists the workflow state as YAML under the project's .fama directory."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.path = self.project_dir / STATUS_FILE

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> WorkflowState | None:
        if not self.path.exists():
            return None
        try:
            payload = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            raise WorkflowStateError(f"Failed to read workflow state {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise WorkflowStateError(f"Workflow state {self.path} is not a mapping.")
        try:
            return WorkflowState.from_dict(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise WorkflowStateError(f"Malformed workflow state {self.path}: {exc}") from exc

    def save(self, state: WorkflowState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rendered = yaml.safe_dump(state.to_dict(), sort_keys=False, allow_unicode=True)
        self.path.write_text(rendered, encoding="utf-8")
        logger.debug("Saved workflow state %s (phase %s)", state.name, state.current_phase)
