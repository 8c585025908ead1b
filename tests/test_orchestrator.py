import asyncio
from pathlib import Path

import pytest

from fama.config import GateDefinition, GatesConfig
from fama.errors import GateCheckError, WorkflowStateError
from fama.phases import Scale
from fama.workflow.orchestrator import WorkflowOrchestrator


def test_init_medium_workflow(tmp_path: Path) -> None:
    orchestrator = WorkflowOrchestrator(tmp_path)

    state = orchestrator.init("x", Scale.MEDIUM)

    assert state.active_phases == ["P", "R", "E", "V"]
    assert state.current_phase == "P"
    assert state.phases["C"].status == "skipped"
    assert orchestrator.get_state().to_dict() == state.to_dict()
    assert orchestrator.get_recommended_agents() == ["architect", "documentation-writer"]
    assert "writing-plans" in orchestrator.get_recommended_skills()


def test_advance_without_workflow_fails(tmp_path: Path) -> None:
    with pytest.raises(WorkflowStateError):
        asyncio.run(WorkflowOrchestrator(tmp_path).advance())


def test_plan_gate_blocks_then_allows_review(tmp_path: Path) -> None:
    orchestrator = WorkflowOrchestrator(tmp_path)
    orchestrator.init("x", Scale.MEDIUM)

    with pytest.raises(GateCheckError) as excinfo:
        asyncio.run(orchestrator.advance())

    assert "Planning phase" in excinfo.value.reason
    assert excinfo.value.hints == ["fama complete"]
    assert orchestrator.get_state().current_phase == "P"

    orchestrator.complete_current_phase()
    transition = asyncio.run(orchestrator.advance())

    assert transition is not None
    assert transition.phase == "R"
    state = orchestrator.get_state()
    assert state.current_phase == "R"
    assert state.phases["P"].status == "completed"
    assert state.phases["R"].status == "in_progress"
    assert [(entry.phase, entry.action) for entry in state.history] == [
        ("P", "started"),
        ("P", "completed"),
        ("P", "completed"),
        ("R", "started"),
    ]


def test_small_workflow_advances_from_planning_without_completion(tmp_path: Path) -> None:
    orchestrator = WorkflowOrchestrator(tmp_path)
    orchestrator.init("x", Scale.SMALL)

    transition = asyncio.run(orchestrator.advance())

    assert transition is not None
    assert transition.phase == "E"
    assert orchestrator.get_state().phases["P"].status == "completed"


def test_quick_workflow_runs_to_completion(tmp_path: Path) -> None:
    orchestrator = WorkflowOrchestrator(tmp_path)
    orchestrator.init("x", Scale.QUICK)

    with pytest.raises(GateCheckError):
        asyncio.run(orchestrator.advance())
    orchestrator.complete_current_phase()
    assert asyncio.run(orchestrator.advance()).phase == "V"

    assert asyncio.run(orchestrator.advance()) is None
    assert orchestrator.is_complete()
    assert orchestrator.get_state().phases["V"].completed_at is not None


def test_configured_gates_run_after_builtin_rules(tmp_path: Path) -> None:
    gates = GatesConfig(gates=[GateDefinition(type="require_tests", phases=["E->V"])])
    orchestrator = WorkflowOrchestrator(tmp_path, gates_config=gates)
    orchestrator.init("x", Scale.QUICK)
    orchestrator.complete_current_phase()

    with pytest.raises(GateCheckError) as excinfo:
        asyncio.run(orchestrator.advance())
    assert "No test configuration" in excinfo.value.reason

    (tmp_path / "pyproject.toml").write_text("[project]\nname='x'\n", encoding="utf-8")
    assert asyncio.run(orchestrator.advance()).phase == "V"


def test_unknown_configured_gate_blocks(tmp_path: Path) -> None:
    gates = GatesConfig(gates=[GateDefinition(type="nope", phases=["P->E"])])
    orchestrator = WorkflowOrchestrator(tmp_path, gates_config=gates)
    orchestrator.init("x", Scale.SMALL)

    with pytest.raises(GateCheckError) as excinfo:
        asyncio.run(orchestrator.advance())

    assert excinfo.value.reason == 'Unknown gate type "nope".'


def test_append_output_and_loop_back(tmp_path: Path) -> None:
    orchestrator = WorkflowOrchestrator(tmp_path)
    orchestrator.init("x", Scale.QUICK)
    orchestrator.append_output("E", ".fama/runs/a-feature-developer.json")
    orchestrator.complete_current_phase()
    asyncio.run(orchestrator.advance())

    with pytest.raises(WorkflowStateError):
        orchestrator.loop_back("bad", target="P")

    state = orchestrator.loop_back("Quality score 40 below threshold 70")

    assert state.current_phase == "E"
    assert state.phases["E"].status == "in_progress"
    assert state.phases["E"].outputs == [".fama/runs/a-feature-developer.json"]
    assert state.phases["V"].status == "pending"
    assert orchestrator.loop_back_count() == 1
    assert state.history[-1].notes == "loop-back: Quality score 40 below threshold 70"

    with pytest.raises(WorkflowStateError):
        orchestrator.loop_back("again")
