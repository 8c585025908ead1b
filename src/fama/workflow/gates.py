from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fama.config import GateDefinition, GatesConfig
from fama.phases import Phase, Scale, parse_scale
from fama.state.manifold import ManifoldStore
from fama.state.status import WorkflowState

logger = logging.getLogger(__name__)

SEVERITY_RANK = {"info": 0, "low": 1, "medium": 2, "high": 3, "critical": 4}

DEFAULT_TEST_CONFIG_FILES = [
    "pytest.ini",
    "pyproject.toml",
    "setup.cfg",
    "tox.ini",
    "conftest.py",
    "vitest.config.ts",
    "vitest.config.js",
    "jest.config.js",
    "jest.config.ts",
]


@dataclass(slots=True)
class GateContext:
    state: WorkflowState
    from_phase: Phase
    to_phase: Phase
    project_dir: Path


@dataclass(slots=True)
class GateResult:
    passed: bool
    reason: str | None = None
    hints: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"passed": self.passed}
        if self.reason:
            payload["reason"] = self.reason
        if self.hints:
            payload["hints"] = list(self.hints)
        return payload


GateHandler = Callable[[GateContext, dict[str, Any]], GateResult | Awaitable[GateResult]]


def check_gate(
    state: WorkflowState,
    from_phase: Phase,
    to_phase: Phase,
    gates: GatesConfig | None = None,
) -> GateResult:
    """Static transition rules driven by the workflow gate flags."""
    gates = gates or GatesConfig()
    phases = state.phases

    if gates.require_approval and phases[from_phase].status != "completed":
        return GateResult(
            passed=False,
            reason=f"Phase {from_phase} must be completed and approved before advancing.",
            hints=["fama complete"],
        )
    if gates.require_plan and from_phase == "P" and to_phase == "R":
        if state.scale >= Scale.MEDIUM and phases["P"].status != "completed":
            return GateResult(
                passed=False,
                reason="Planning phase must be completed before Review.",
                hints=["fama complete"],
            )
    if from_phase == "R" and to_phase == "E":
        if state.scale >= Scale.LARGE and phases["R"].status != "completed":
            return GateResult(
                passed=False,
                reason="Review phase must be completed before Execution for large projects.",
                hints=["fama complete"],
            )
    if from_phase == "E" and to_phase == "V" and phases["E"].status != "completed":
        return GateResult(
            passed=False,
            reason="Execution phase must be completed before Validation.",
            hints=["fama complete"],
        )
    if from_phase == "V" and to_phase == "C" and phases["V"].status != "completed":
        return GateResult(
            passed=False,
            reason="Validation phase must be completed before Confirmation.",
            hints=["fama complete"],
        )
    return GateResult(passed=True)


def require_plan_gate(context: GateContext, config: dict[str, Any]) -> GateResult:
    if context.from_phase != "P" or context.to_phase != "R":
        return GateResult(passed=True)
    min_scale = parse_scale(config.get("min_scale", config.get("minScale", Scale.MEDIUM)))
    if context.state.scale < min_scale:
        return GateResult(passed=True)
    if context.state.phases["P"].status == "completed":
        return GateResult(passed=True)
    return GateResult(
        passed=False,
        reason="Planning phase must be completed before Review.",
        hints=["Run a planning agent for the current task.", "fama complete"],
    )


def require_approval_gate(context: GateContext, config: dict[str, Any]) -> GateResult:
    if context.state.phases[context.from_phase].status != "completed":
        return GateResult(
            passed=False,
            reason=f"Phase {context.from_phase} requires approval before advancing.",
            hints=["fama complete"],
        )
    approval_file = config.get("approval_file", config.get("approvalFile"))
    if approval_file and not (context.project_dir / approval_file).exists():
        return GateResult(
            passed=False,
            reason=f"Approval file {approval_file} not found.",
            hints=[f"Create {approval_file} to record the approval."],
        )
    return GateResult(passed=True)


def require_tests_gate(context: GateContext, config: dict[str, Any]) -> GateResult:
    check_files = config.get("check_files", config.get("checkFiles", DEFAULT_TEST_CONFIG_FILES))
    if not any((context.project_dir / name).exists() for name in check_files):
        return GateResult(
            passed=False,
            reason="No test configuration found. Tests are required before advancing.",
            hints=[
                "Add a test runner configuration (for example pytest.ini or pyproject.toml).",
                "Write tests for the implemented changes.",
            ],
        )
    if context.state.phases["E"].status != "completed":
        return GateResult(
            passed=False,
            reason="Execution phase must be completed (with tests) before advancing.",
            hints=["fama complete"],
        )
    return GateResult(passed=True)


def require_security_audit_gate(context: GateContext, config: dict[str, Any]) -> GateResult:
    severity = str(config.get("severity", "high"))
    if context.state.phases["V"].status != "completed":
        return GateResult(
            passed=False,
            reason=(
                "Security audit required: Validation phase must be completed "
                f"(threshold: {severity})."
            ),
            hints=["Run the security-auditor agent.", "fama complete"],
        )
    manifold = ManifoldStore(context.project_dir).load()
    if manifold is None:
        return GateResult(passed=True)
    threshold = SEVERITY_RANK.get(severity, SEVERITY_RANK["high"])
    open_issues = [
        issue
        for issue in manifold.unresolved_issues()
        if SEVERITY_RANK.get(issue.severity, 0) >= threshold
    ]
    if open_issues:
        return GateResult(
            passed=False,
            reason=(
                f"{len(open_issues)} unresolved issue(s) at or above {severity} severity."
            ),
            hints=[f"Resolve issue {issue.id}: {issue.description}" for issue in open_issues],
        )
    return GateResult(passed=True)


class GateRegistry:
    """Maps gate type names to handlers and evaluates configured gates."""

    def __init__(self) -> None:
        self._handlers: dict[str, GateHandler] = {}
        self.register("require_plan", require_plan_gate)
        self.register("require_approval", require_approval_gate)
        self.register("require_tests", require_tests_gate)
        self.register("require_security_audit", require_security_audit_gate)

    def register(self, gate_type: str, handler: GateHandler) -> None:
        self._handlers[gate_type] = handler

    def get_handler(self, gate_type: str) -> GateHandler | None:
        return self._handlers.get(gate_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)

    async def evaluate(
        self,
        definitions: Sequence[GateDefinition],
        state: WorkflowState,
        from_phase: Phase,
        to_phase: Phase,
        project_dir: Path,
    ) -> list[GateResult]:
        context = GateContext(
            state=state, from_phase=from_phase, to_phase=to_phase, project_dir=project_dir
        )
        results: list[GateResult] = []
        for definition in definitions:
            if not definition.applies_to(from_phase, to_phase):
                continue
            handler = self._handlers.get(definition.type)
            if handler is None:
                results.append(
                    GateResult(
                        passed=False,
                        reason=f'Unknown gate type "{definition.type}".',
                        hints=[f"Available gate types: {', '.join(self.types())}"],
                    )
                )
                continue
            outcome = handler(context, dict(definition.config))
            if inspect.isawaitable(outcome):
                outcome = await outcome
            logger.debug(
                "Gate %s for %s->%s: %s", definition.type, from_phase, to_phase, outcome.passed
            )
            results.append(outcome)
        return results

    async def check(
        self,
        definitions: Sequence[GateDefinition],
        state: WorkflowState,
        from_phase: Phase,
        to_phase: Phase,
        project_dir: Path,
    ) -> GateResult:
        results = await self.evaluate(definitions, state, from_phase, to_phase, project_dir)
        for result in results:
            if not result.passed:
                return result
        return GateResult(passed=True)
