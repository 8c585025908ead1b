from fama.workflow.gates import GateContext, GateRegistry, GateResult, check_gate
from fama.workflow.orchestrator import PhaseTransition, WorkflowOrchestrator
from fama.workflow.parallel import (
    ParallelAgentTask,
    ParallelExecutionResult,
    ParallelExecutionSummary,
    execute_agents_in_parallel,
)
from fama.workflow.quality import (
    LoopBackDecision,
    QualityScore,
    assess_validation_quality,
    should_loop_back,
)
from fama.workflow.runner import AgentRunOutcome, PhaseRunner, ValidationOutcome

__all__ = [
    "AgentRunOutcome",
    "GateContext",
    "GateRegistry",
    "GateResult",
    "LoopBackDecision",
    "ParallelAgentTask",
    "ParallelExecutionResult",
    "ParallelExecutionSummary",
    "PhaseRunner",
    "PhaseTransition",
    "QualityScore",
    "ValidationOutcome",
    "WorkflowOrchestrator",
    "assess_validation_quality",
    "check_gate",
    "execute_agents_in_parallel",
    "should_loop_back",
]
