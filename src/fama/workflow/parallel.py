from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from fama.phases import Phase

logger = logging.getLogger(__name__)

Barrier = Literal["all", "any", "quorum"]


@dataclass(slots=True)
class ParallelAgentTask:
    agent: str
    task: str
    skills: list[str] | None = None


@dataclass(slots=True)
class TaskOutcome:
    """What a task runner hands back for one successful agent run."""

    result: str
    cost_usd: float | None = None


@dataclass(slots=True)
class ParallelExecutionResult:
    agent: str
    status: Literal["success", "error"]
    duration_ms: int
    result: str | None = None
    error: str | None = None
    cost_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "agent": self.agent,
            "status": self.status,
            "duration_ms": self.duration_ms,
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        if self.cost_usd is not None:
            payload["cost_usd"] = self.cost_usd
        return payload


@dataclass(slots=True)
class ParallelExecutionSummary:
    results: list[ParallelExecutionResult] = field(default_factory=list)
    total_duration_ms: int = 0
    total_cost_usd: float = 0.0
    success_count: int = 0
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "total_duration_ms": self.total_duration_ms,
            "total_cost_usd": self.total_cost_usd,
            "success_count": self.success_count,
            "error_count": self.error_count,
        }


@dataclass(slots=True, frozen=True)
class PhaseParallelConfig:
    phase: Phase
    agents: tuple[str, ...]
    barrier: Barrier = "all"
    parallel_enabled: bool = False
    quorum_count: int | None = None
    timeout_seconds: float | None = None


DEFAULT_PHASE_PARALLEL_CONFIG: dict[Phase, PhaseParallelConfig] = {
    "P": PhaseParallelConfig(phase="P", agents=("architect",)),
    "R": PhaseParallelConfig(
        phase="R",
        agents=("security-auditor", "code-reviewer", "architect"),
        parallel_enabled=True,
    ),
    "E": PhaseParallelConfig(phase="E", agents=("feature-developer",)),
    "V": PhaseParallelConfig(
        phase="V",
        agents=("test-writer", "code-reviewer", "security-auditor", "performance-optimizer"),
        parallel_enabled=True,
    ),
    "C": PhaseParallelConfig(phase="C", agents=("documentation-writer", "devops-specialist")),
}

TaskRunner = Callable[[ParallelAgentTask], Awaitable[TaskOutcome]]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _run_one(
    task: ParallelAgentTask,
    run_task: TaskRunner,
    timeout_seconds: float | None,
) -> ParallelExecutionResult:
    started = time.monotonic()
    try:
        if timeout_seconds is None:
            outcome = await run_task(task)
        else:
            outcome = await asyncio.wait_for(run_task(task), timeout=timeout_seconds)
    except TimeoutError:
        return ParallelExecutionResult(
            agent=task.agent,
            status="error",
            error=f"Agent timed out after {timeout_seconds:.1f}s",
            duration_ms=_elapsed_ms(started),
        )
    except Exception as exc:
        return ParallelExecutionResult(
            agent=task.agent,
            status="error",
            error=str(exc) or exc.__class__.__name__,
            duration_ms=_elapsed_ms(started),
        )
    return ParallelExecutionResult(
        agent=task.agent,
        status="success",
        result=outcome.result,
        cost_usd=outcome.cost_usd,
        duration_ms=_elapsed_ms(started),
    )


async def execute_agents_in_parallel(
    tasks: Sequence[ParallelAgentTask],
    run_task: TaskRunner,
    *,
    timeout_seconds: float | None = None,
) -> ParallelExecutionSummary:
    """Run every task concurrently and wait for all of them to settle.

    A failing or timed-out agent becomes an ``error`` result; it never cancels
    its siblings. Results keep the order of ``tasks``.
    """
    started = time.monotonic()
    logger.info("Starting parallel execution of %d agents", len(tasks))
    settled = await asyncio.gather(
        *(_run_one(task, run_task, timeout_seconds) for task in tasks),
        return_exceptions=True,
    )
    results: list[ParallelExecutionResult] = []
    for task, outcome in zip(tasks, settled, strict=True):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            outcome = ParallelExecutionResult(
                agent=task.agent, status="error", error=str(outcome), duration_ms=0
            )
        results.append(outcome)

    summary = ParallelExecutionSummary(
        results=results,
        total_duration_ms=_elapsed_ms(started),
        total_cost_usd=sum(result.cost_usd or 0.0 for result in results),
        success_count=sum(1 for result in results if result.status == "success"),
        error_count=sum(1 for result in results if result.status == "error"),
    )
    logger.info(
        "Parallel execution complete in %dms: %d succeeded, %d failed",
        summary.total_duration_ms,
        summary.success_count,
        summary.error_count,
    )
    for result in results:
        if result.status == "error":
            logger.warning("Agent %s failed: %s", result.agent, result.error)
    return summary


def stage_passed(
    summary: ParallelExecutionSummary,
    barrier: Barrier = "all",
    quorum_count: int | None = None,
) -> bool:
    if barrier == "all":
        return summary.error_count == 0 and summary.success_count > 0
    if barrier == "any":
        return summary.success_count > 0
    required = quorum_count if quorum_count is not None else len(summary.results) // 2 + 1
    return summary.success_count >= required


def get_phase_parallel_config(phase: Phase, **overrides: Any) -> PhaseParallelConfig:
    config = DEFAULT_PHASE_PARALLEL_CONFIG[phase]
    overrides.pop("phase", None)
    if "agents" in overrides:
        overrides["agents"] = tuple(overrides["agents"])
    return replace(config, **overrides) if overrides else config


def is_phase_parallelizable(phase: Phase) -> bool:
    return DEFAULT_PHASE_PARALLEL_CONFIG[phase].parallel_enabled


def create_validation_tasks(
    base_task: str,
    agents: Sequence[str],
    skill_overrides: Mapping[str, list[str]] | None = None,
) -> list[ParallelAgentTask]:
    overrides = skill_overrides or {}
    return [
        ParallelAgentTask(agent=agent, task=f"[{agent.upper()}] {base_task}", skills=overrides.get(agent))
        for agent in agents
    ]


def create_phase_tasks(
    base_task: str,
    config: PhaseParallelConfig,
    skill_overrides: Mapping[str, list[str]] | None = None,
) -> list[ParallelAgentTask]:
    overrides = skill_overrides or {}
    return [
        ParallelAgentTask(
            agent=agent,
            task=f"[{config.phase}:{agent.upper()}] {base_task}",
            skills=overrides.get(agent),
        )
        for agent in config.agents
    ]
