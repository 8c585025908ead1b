from fama.state.manifold import (
    ArtifactEntry,
    CodebaseSummary,
    ContextManifold,
    ManifoldDecision,
    ManifoldIssue,
    ManifoldStore,
    PhaseManifoldEntry,
    SelectedContext,
    StackInfo,
    compute_hash,
)
from fama.state.status import HistoryEntry, PhaseStatus, StatusStore, WorkflowState

__all__ = [
    "ArtifactEntry",
    "CodebaseSummary",
    "ContextManifold",
    "HistoryEntry",
    "ManifoldDecision",
    "ManifoldIssue",
    "ManifoldStore",
    "PhaseManifoldEntry",
    "PhaseStatus",
    "SelectedContext",
    "StackInfo",
    "StatusStore",
    "WorkflowState",
    "compute_hash",
]
