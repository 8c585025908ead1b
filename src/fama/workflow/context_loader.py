from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fama.output import extract_artifacts, extract_summary
from fama.phases import PHASE_DEFINITIONS, PHASE_ORDER, Phase, phase_index
from fama.state.status import WorkflowState

logger = logging.getLogger(__name__)

RUNS_DIR = Path(".fama") / "runs"

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(slots=True)
class RunRecord:
    agent: str
    task: str
    timestamp: str
    result: str = ""
    cost_usd: float | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "agent": self.agent,
            "task": self.task,
            "result": self.result,
            "timestamp": self.timestamp,
        }
        if self.cost_usd is not None:
            payload["costUSD"] = self.cost_usd
        if self.duration_ms is not None:
            payload["durationMs"] = self.duration_ms
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        return cls(
            agent=str(data["agent"]),
            task=str(data.get("task", "")),
            timestamp=str(data.get("timestamp", "")),
            result=str(data.get("result") or ""),
            cost_usd=data.get("costUSD"),
            duration_ms=data.get("durationMs"),
        )


@dataclass(slots=True)
class PhaseOutputSummary:
    agent: str
    task: str
    result_summary: str
    timestamp: str
    artifacts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PhaseContext:
    phase: Phase
    phase_name: str
    outputs: list[PhaseOutputSummary] = field(default_factory=list)


def write_run_record(project_dir: Path, record: RunRecord) -> Path:
    runs_dir = project_dir / RUNS_DIR
    runs_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
    path = runs_dir / f"{stamp}-{_UNSAFE_NAME.sub('-', record.agent)}.json"
    path.write_text(json.dumps(record.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def load_run_record(path: Path) -> RunRecord | None:
    if not path.exists():
        return None
    try:
        return RunRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, KeyError, TypeError) as exc:
        logger.warning("Skipping unreadable run record %s: %s", path, exc)
        return None


def _resolve(project_dir: Path, ref: str) -> Path:
    path = Path(ref)
    return path if path.is_absolute() else project_dir / path


def previous_completed_phases(state: WorkflowState, target: Phase) -> list[Phase]:
    return [
        phase
        for phase in PHASE_ORDER[: phase_index(target)]
        if state.phases[phase].status == "completed"
    ]


def load_phase_context(
    project_dir: Path,
    state: WorkflowState,
    target: Phase,
) -> PhaseContext | None:
    """Summaries of run records referenced by the completed phases before ``target``."""
    outputs: list[PhaseOutputSummary] = []
    for phase in previous_completed_phases(state, target):
        for ref in state.phases[phase].outputs:
            record = load_run_record(_resolve(project_dir, ref))
            if record is None:
                continue
            outputs.append(
                PhaseOutputSummary(
                    agent=record.agent,
                    task=record.task,
                    result_summary=extract_summary(record.result, 500),
                    artifacts=extract_artifacts(record.result),
                    timestamp=record.timestamp,
                )
            )
    if not outputs:
        return None
    return PhaseContext(phase=target, phase_name=PHASE_DEFINITIONS[target].name, outputs=outputs)


def format_phase_context(context: PhaseContext) -> str:
    if not context.outputs:
        return ""
    lines = [
        "## Previous Phase Outputs\n",
        f"Context from completed phases before {context.phase_name}:\n",
    ]
    for output in context.outputs:
        lines.append(f"### {output.agent} ({output.timestamp})")
        lines.append(f"**Task:** {output.task}")
        if output.result_summary:
            lines.append(f"**Summary:**\n{output.result_summary}")
        if output.artifacts:
            lines.append(f"**Artifacts:** {', '.join(output.artifacts)}")
        lines.append("")
    return "\n".join(lines)


def get_planning_output(project_dir: Path, state: WorkflowState) -> PhaseOutputSummary | None:
    planning = state.phases["P"]
    if planning.status != "completed" or not planning.outputs:
        return None
    record = load_run_record(_resolve(project_dir, planning.outputs[-1]))
    if record is None:
        return None
    return PhaseOutputSummary(
        agent=record.agent,
        task=record.task,
        result_summary=record.result,
        artifacts=extract_artifacts(record.result),
        timestamp=record.timestamp,
    )
