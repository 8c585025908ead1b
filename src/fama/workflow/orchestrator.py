from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from fama.config import GatesConfig
from fama.errors import GateCheckError, WorkflowStateError
from fama.phases import PHASE_DEFINITIONS, Phase, Scale
from fama.state.status import StatusStore, WorkflowState
from fama.workflow.gates import GateRegistry, check_gate

logger = logging.getLogger(__name__)

LOOP_BACK_PREFIX = "loop-back"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class PhaseTransition:
    phase: Phase
    state: WorkflowState


class WorkflowOrchestrator:
    """Drives a workflow through its active PREVEC phases.

    Every mutation is a load, modify, save cycle against ``status.yaml`` so the
    on-disk state is the single source of truth between invocations.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        gates_config: GatesConfig | None = None,
        registry: GateRegistry | None = None,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.gates_config = gates_config or GatesConfig()
        self.registry = registry or GateRegistry()
        self.store = StatusStore(self.project_dir)

    def init(self, name: str, scale: Scale) -> WorkflowState:
        state = WorkflowState.create(name, scale)
        self.store.save(state)
        logger.info("Initialized workflow %s at scale %s", name, Scale(scale).name)
        return state

    def get_state(self) -> WorkflowState | None:
        return self.store.load()

    def _require_state(self) -> WorkflowState:
        state = self.store.load()
        if state is None:
            raise WorkflowStateError("No active workflow. Run `fama init` first.")
        return state

    async def advance(self) -> PhaseTransition | None:
        """Move to the next active phase, or finish the workflow.

        Returns ``None`` once the last active phase has been completed. Raises
        ``GateCheckError`` without touching state when a gate blocks the move.
        """
        state = self._require_state()
        active = state.active_phases
        if not active:
            raise WorkflowStateError(f"Workflow {state.name} has no active phases.")
        current = state.current_phase
        if current not in active:
            raise WorkflowStateError(f"Current phase {current} is not active.")
        position = active.index(current)
        now = _utcnow_iso()

        if position == len(active) - 1:
            status = state.phases[current]
            status.status = "completed"
            status.completed_at = status.completed_at or now
            state.record(current, "completed")
            self.store.save(state)
            logger.info("Workflow %s complete", state.name)
            return None

        next_phase = active[position + 1]
        verdict = check_gate(state, current, next_phase, self.gates_config)
        if verdict.passed:
            verdict = await self.registry.check(
                self.gates_config.gates, state, current, next_phase, self.project_dir
            )
        if not verdict.passed:
            raise GateCheckError(
                verdict.reason or f"Gate blocked {current} -> {next_phase}.",
                hints=verdict.hints,
            )

        status = state.phases[current]
        status.status = "completed"
        status.completed_at = status.completed_at or now
        state.record(current, "completed")
        upcoming = state.phases[next_phase]
        upcoming.status = "in_progress"
        upcoming.started_at = now
        state.record(next_phase, "started")
        state.current_phase = next_phase
        self.store.save(state)
        logger.info("Workflow %s advanced %s -> %s", state.name, current, next_phase)
        return PhaseTransition(phase=next_phase, state=state)

    def complete_current_phase(self) -> WorkflowState:
        state = self._require_state()
        status = state.phases[state.current_phase]
        if status.status != "completed":
            status.status = "completed"
            status.completed_at = _utcnow_iso()
            state.record(state.current_phase, "completed")
            self.store.save(state)
        return state

    def append_output(self, phase: Phase, output_ref: str) -> WorkflowState:
        state = self._require_state()
        state.phases[phase].outputs.append(output_ref)
        self.store.save(state)
        return state

    def loop_back(self, reason: str, target: Phase = "E") -> WorkflowState:
        """Reopen ``target`` after a failed validation and reset the phases after it."""
        state = self._require_state()
        active = state.active_phases
        if target not in active:
            raise WorkflowStateError(f"Cannot loop back to inactive phase {target}.")
        if active.index(state.current_phase) <= active.index(target):
            raise WorkflowStateError(
                f"Cannot loop back to {target} from {state.current_phase}."
            )
        for phase in active[active.index(target) + 1 :]:
            status = state.phases[phase]
            status.status = "pending"
            status.started_at = None
            status.completed_at = None
        reopened = state.phases[target]
        reopened.status = "in_progress"
        reopened.started_at = _utcnow_iso()
        reopened.completed_at = None
        state.record(target, "started", notes=f"{LOOP_BACK_PREFIX}: {reason}")
        state.current_phase = target
        self.store.save(state)
        logger.warning("Workflow %s looped back to %s: %s", state.name, target, reason)
        return state

    def loop_back_count(self) -> int:
        state = self.store.load()
        if state is None:
            return 0
        return sum(
            1
            for entry in state.history
            if entry.action == "started" and (entry.notes or "").startswith(LOOP_BACK_PREFIX)
        )

    def get_recommended_agents(self) -> list[str]:
        state = self.store.load()
        if state is None:
            return []
        return list(PHASE_DEFINITIONS[state.current_phase].agents)

    def get_recommended_skills(self) -> list[str]:
        state = self.store.load()
        if state is None:
            return []
        return list(PHASE_DEFINITIONS[state.current_phase].skills)

    def is_complete(self) -> bool:
        state = self.store.load()
        if state is None:
            return False
        return all(
            state.phases[phase].status == "completed" for phase in state.active_phases
        )
