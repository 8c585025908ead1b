from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from fama.agents.base import Agent, AgentResponse, Skill
from fama.config import FamaConfig
from fama.errors import AgentExecutionError, OutputParseError, WorkflowStateError
from fama.output import StructuredAgentOutput, build_output_from_result
from fama.phases import PHASE_DEFINITIONS, Phase, Scale
from fama.state.manifold import ContextManifold, ManifoldStore
from fama.state.status import WorkflowState
from fama.tokens import BudgetAllocation, create_custom_budget, get_budget_for_scale, resolve_budget
from fama.workflow.context_loader import (
    RunRecord,
    format_phase_context,
    load_phase_context,
    write_run_record,
)
from fama.workflow.orchestrator import WorkflowOrchestrator
from fama.workflow.parallel import (
    ParallelAgentTask,
    ParallelExecutionSummary,
    TaskOutcome,
    create_validation_tasks,
    execute_agents_in_parallel,
)
from fama.workflow.quality import (
    LoopBackDecision,
    QualityScore,
    assess_validation_quality,
    should_loop_back,
)

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class AgentRunOutcome:
    response: AgentResponse
    record_path: Path
    output: StructuredAgentOutput


@dataclass(slots=True)
class ValidationOutcome:
    summary: ParallelExecutionSummary
    quality: QualityScore
    decision: LoopBackDecision


class PhaseRunner:
    """Runs agents inside the current workflow and feeds their results back into state."""

    def __init__(
        self,
        project_dir: Path,
        config: FamaConfig,
        agents: Mapping[str, Agent],
        orchestrator: WorkflowOrchestrator | None = None,
        manifold_store: ManifoldStore | None = None,
        skills: Mapping[str, Skill] | None = None,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.config = config
        self.agents = dict(agents)
        self.orchestrator = orchestrator or WorkflowOrchestrator(
            self.project_dir, gates_config=config.workflow.gates
        )
        self.manifold_store = manifold_store or ManifoldStore(self.project_dir)
        self.skills = dict(skills or {})

    def _require_state(self) -> WorkflowState:
        state = self.orchestrator.get_state()
        if state is None:
            raise WorkflowStateError("No active workflow. Run `fama init` first.")
        return state

    def _agent(self, slug: str) -> Agent:
        agent = self.agents.get(slug)
        if agent is None:
            raise AgentExecutionError(f"Unknown agent: {slug}", agent=slug)
        return agent

    def _resolve_skills(self, agent: Agent, extra: Sequence[str] | None) -> list[Skill]:
        slugs = list(dict.fromkeys([*agent.default_skills, *(extra or [])]))
        missing = [slug for slug in slugs if slug not in self.skills]
        if missing:
            logger.warning("Missing skills ignored for %s: %s", agent.slug, ", ".join(missing))
        return [self.skills[slug] for slug in slugs if slug in self.skills]

    def _budgets(self, state: WorkflowState) -> BudgetAllocation:
        scale = Scale(state.scale)
        allocation = get_budget_for_scale(scale)
        return create_custom_budget(
            {
                "skills": resolve_budget(self.config.budgets.skills, scale, allocation.skills),
                "context": resolve_budget(self.config.budgets.context, scale, allocation.context),
            },
            allocation,
        )

    def build_context(
        self,
        state: WorkflowState,
        manifold: ContextManifold,
        phase: Phase,
        budget: int,
    ) -> str:
        """Manifold context for ``phase``, or raw run-record summaries while the manifold is empty."""
        selected = manifold.select_for_phase(phase, budget)
        if selected.entries or selected.blocking_issues or selected.key_decisions:
            return manifold.format_for_prompt(selected)
        legacy = load_phase_context(self.project_dir, state, phase)
        return format_phase_context(legacy) if legacy is not None else ""

    async def _execute(
        self,
        agent: Agent,
        task: str,
        phase: Phase,
        *,
        skills: Sequence[str] | None,
        allocation: BudgetAllocation,
        context: str,
    ) -> tuple[AgentResponse, Path]:
        response = await agent.run(
            task,
            skills=self._resolve_skills(agent, skills),
            skill_budget=allocation.skills,
            context=context,
            allocation=allocation,
            cwd=self.project_dir,
            max_turns=self.config.backend.max_turns,
        )
        record_path = write_run_record(
            self.project_dir,
            RunRecord(
                agent=agent.slug,
                task=task,
                timestamp=_utcnow_iso(),
                result=response.content,
                cost_usd=response.cost_usd,
                duration_ms=response.duration_ms,
            ),
        )
        self.orchestrator.append_output(phase, record_path.relative_to(self.project_dir).as_posix())
        return response, record_path

    async def run_agent(
        self,
        agent_slug: str,
        task: str,
        phase: Phase | None = None,
        *,
        skills: Sequence[str] | None = None,
    ) -> AgentRunOutcome:
        state = self._require_state()
        agent = self._agent(agent_slug)
        phase = phase or state.current_phase
        allocation = self._budgets(state)
        manifold = self.manifold_store.ensure(state)
        context = self.build_context(state, manifold, phase, allocation.context)

        response, record_path = await self._execute(
            agent, task, phase, skills=skills, allocation=allocation, context=context
        )
        output = build_output_from_result(
            response.content, phase, agent.slug, self.config.llm_first.manifold_policy
        )
        self.manifold_store.record_output(manifold, phase, output)
        logger.info("Agent %s finished in phase %s", agent.slug, phase)
        return AgentRunOutcome(response=response, record_path=record_path, output=output)

    async def run_validation(
        self,
        task: str,
        agents: Sequence[str] | None = None,
    ) -> ValidationOutcome:
        """Fan the validation agents out, score the results and loop back to E when they fall short."""
        state = self._require_state()
        if state.current_phase != "V":
            raise WorkflowStateError(
                f"Validation runs in phase V; current phase is {state.current_phase}."
            )
        allocation = self._budgets(state)
        manifold = self.manifold_store.ensure(state)
        context = self.build_context(state, manifold, "V", allocation.context)
        slugs = list(agents) if agents is not None else list(PHASE_DEFINITIONS["V"].agents)

        async def run_task(parallel_task: ParallelAgentTask) -> TaskOutcome:
            response, _ = await self._execute(
                self._agent(parallel_task.agent),
                parallel_task.task,
                "V",
                skills=parallel_task.skills,
                allocation=allocation,
                context=context,
            )
            return TaskOutcome(result=response.content, cost_usd=response.cost_usd)

        summary = await execute_agents_in_parallel(
            create_validation_tasks(task, slugs),
            run_task,
            timeout_seconds=self.config.llm_first.parallel_timeout_seconds,
        )

        for result in summary.results:
            if result.status != "success":
                continue
            try:
                output = build_output_from_result(
                    result.result, "V", result.agent, self.config.llm_first.manifold_policy
                )
            except OutputParseError as exc:
                logger.warning("Not recording %s in the manifold: %s", result.agent, exc)
                continue
            manifold.add_output("V", output)
        self.manifold_store.save(manifold)

        quality = assess_validation_quality(summary.results, self.config.quality)
        decision = should_loop_back(quality, self.orchestrator.loop_back_count(), self.config.quality)
        if decision.loop_back:
            self.orchestrator.loop_back(decision.reason)
        logger.info(
            "Validation scored %d (%s): %s",
            quality.score,
            "passed" if quality.passed else "failed",
            decision.reason,
        )
        return ValidationOutcome(summary=summary, quality=quality, decision=decision)
