import asyncio
from pathlib import Path

from fama.config import GateDefinition, GatesConfig
from fama.output import Issue, create_success_output
from fama.phases import Scale
from fama.state.manifold import ManifoldStore
from fama.state.status import WorkflowState
from fama.workflow.gates import GateContext, GateRegistry, GateResult, check_gate


def _state(scale: Scale = Scale.MEDIUM, **statuses: str) -> WorkflowState:
    state = WorkflowState.create("checkout", scale)
    for phase, status in statuses.items():
        state.phases[phase].status = status  # type: ignore[index]
    return state


def test_builtin_plan_rule_blocks_review_until_planning_completes() -> None:
    result = check_gate(_state(), "P", "R")

    assert not result.passed
    assert result.reason == "Planning phase must be completed before Review."
    assert result.hints == ["fama complete"]
    assert check_gate(_state(P="completed"), "P", "R").passed
    assert check_gate(_state(), "P", "R", GatesConfig(require_plan=False)).passed


def test_builtin_review_rule_applies_to_large_scale_only() -> None:
    assert check_gate(_state(Scale.MEDIUM), "R", "E").passed
    blocked = check_gate(_state(Scale.LARGE), "R", "E")

    assert not blocked.passed
    assert "large projects" in (blocked.reason or "")


def test_builtin_execution_and_validation_rules() -> None:
    assert not check_gate(_state(), "E", "V").passed
    assert check_gate(_state(E="completed"), "E", "V").passed
    assert not check_gate(_state(Scale.LARGE), "V", "C").passed


def test_require_approval_flag_needs_completed_source_phase() -> None:
    gates = GatesConfig(require_plan=False, require_approval=True)

    result = check_gate(_state(Scale.SMALL), "P", "E", gates)

    assert not result.passed
    assert "approved" in (result.reason or "")


def test_require_plan_gate_from_registry(tmp_path: Path) -> None:
    registry = GateRegistry()
    gates = [GateDefinition(type="require_plan", phases=["P->R"])]

    blocked = asyncio.run(registry.check(gates, _state(), "P", "R", tmp_path))
    allowed_small = asyncio.run(registry.check(gates, _state(Scale.SMALL), "P", "R", tmp_path))

    assert not blocked.passed
    assert "Planning phase" in (blocked.reason or "")
    assert allowed_small.passed


def test_gates_only_run_for_their_transitions(tmp_path: Path) -> None:
    registry = GateRegistry()
    gates = [GateDefinition(type="require_tests", phases=["E->V"])]

    results = asyncio.run(registry.evaluate(gates, _state(), "P", "R", tmp_path))

    assert results == []


def test_unknown_gate_type_is_a_failure(tmp_path: Path) -> None:
    registry = GateRegistry()
    gates = [GateDefinition(type="bogus", phases=["P->R"])]

    result = asyncio.run(registry.check(gates, _state(P="completed"), "P", "R", tmp_path))

    assert not result.passed
    assert result.reason == 'Unknown gate type "bogus".'
    assert result.hints == [
        "Available gate types: require_approval, require_plan, "
        "require_security_audit, require_tests"
    ]


def test_require_approval_gate_checks_approval_file(tmp_path: Path) -> None:
    registry = GateRegistry()
    gates = [
        GateDefinition(type="require_approval", phases=["R->E"], config={"approval_file": "APPROVED"})
    ]
    state = _state(P="completed", R="completed")

    missing = asyncio.run(registry.check(gates, state, "R", "E", tmp_path))
    (tmp_path / "APPROVED").write_text("ok", encoding="utf-8")
    present = asyncio.run(registry.check(gates, state, "R", "E", tmp_path))

    assert not missing.passed
    assert missing.reason == "Approval file APPROVED not found."
    assert present.passed


def test_require_tests_gate_needs_test_config_and_completed_execution(tmp_path: Path) -> None:
    registry = GateRegistry()
    gates = [GateDefinition(type="require_tests", phases=["E->V"])]

    no_config = asyncio.run(registry.check(gates, _state(E="completed"), "E", "V", tmp_path))
    (tmp_path / "pytest.ini").write_text("[pytest]\n", encoding="utf-8")
    not_done = asyncio.run(registry.check(gates, _state(), "E", "V", tmp_path))
    done = asyncio.run(registry.check(gates, _state(E="completed"), "E", "V", tmp_path))

    assert not no_config.passed
    assert "No test configuration" in (no_config.reason or "")
    assert not not_done.passed
    assert done.passed


def test_require_tests_gate_accepts_camel_case_check_files(tmp_path: Path) -> None:
    registry = GateRegistry()
    gates = [
        GateDefinition(type="require_tests", phases=["E->V"], config={"checkFiles": ["custom.cfg"]})
    ]

    missing = asyncio.run(registry.check(gates, _state(E="completed"), "E", "V", tmp_path))
    (tmp_path / "custom.cfg").write_text("[tests]\n", encoding="utf-8")
    present = asyncio.run(registry.check(gates, _state(E="completed"), "E", "V", tmp_path))

    assert not missing.passed
    assert present.passed


def test_require_security_audit_gate_uses_manifold_issues(tmp_path: Path) -> None:
    registry = GateRegistry()
    state = _state(Scale.LARGE, V="completed")
    store = ManifoldStore(tmp_path)
    manifold = store.ensure(state)
    output = create_success_output("security-auditor", "V", "Audit done")
    output.issues.append(Issue(id="SEC-1", description="Hardcoded secret", severity="high"))
    store.record_output(manifold, "V", output)

    high = [GateDefinition(type="require_security_audit", phases=["V->C"])]
    critical = [
        GateDefinition(
            type="require_security_audit", phases=["V->C"], config={"severity": "critical"}
        )
    ]

    blocked = asyncio.run(registry.check(high, state, "V", "C", tmp_path))
    lenient = asyncio.run(registry.check(critical, state, "V", "C", tmp_path))
    not_validated = asyncio.run(registry.check(high, _state(Scale.LARGE), "V", "C", tmp_path))

    assert not blocked.passed
    assert blocked.hints == ["Resolve issue SEC-1: Hardcoded secret"]
    assert lenient.passed
    assert not not_validated.passed

    manifold.resolve_issue("SEC-1")
    store.save(manifold)
    assert asyncio.run(registry.check(high, state, "V", "C", tmp_path)).passed


def test_custom_async_handler(tmp_path: Path) -> None:
    registry = GateRegistry()

    async def freeze(context: GateContext, config: dict) -> GateResult:
        return GateResult(passed=False, reason=f"Frozen: {config['why']}")

    registry.register("freeze", freeze)
    gates = [GateDefinition(type="freeze", phases=["P->R"], config={"why": "release week"})]

    result = asyncio.run(registry.check(gates, _state(P="completed"), "P", "R", tmp_path))

    assert "freeze" in registry.types()
    assert result.reason == "Frozen: release week"
