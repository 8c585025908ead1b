import json
from collections.abc import AsyncIterator
from pathlib import Path

from click.testing import CliRunner

from fama.backends.base import ExecutionProvider, ProviderEvent, ProviderRequest
from fama.cli import cli
from fama.config import load_config


class FakeProvider(ExecutionProvider):
    name = "fake"

    async def query(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        if request.task.startswith("[TEST-WRITER]"):
            reply = "All tests pass"
        elif request.task.startswith("[SECURITY-AUDITOR]"):
            reply = "No vulnerabilities found"
        elif request.task.startswith("[CODE-REVIEWER]"):
            reply = "LGTM"
        else:
            reply = f"Created src/app.py for: {request.task}"
        yield ProviderEvent(type="result", text=reply, cost_usd=0.02, turns=1)


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("fama.cli._build_provider", lambda config, project_dir: FakeProvider())
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "checkout", "--scale", "QUICK"])
    assert init_result.exit_code == 0
    assert "Scale: Quick" in init_result.output
    assert "Phases: E -> V" in init_result.output
    assert load_config(tmp_path / "fama.toml").project.name == "checkout"

    run_result = runner.invoke(cli, ["run", "feature-developer", "add login"])
    assert run_result.exit_code == 0
    assert "Created src/app.py for: add login" in run_result.output
    assert "Run record: .fama/runs/" in run_result.output
    assert "Cost: $0.0200" in run_result.output

    blocked = runner.invoke(cli, ["advance"])
    assert blocked.exit_code != 0
    assert "Execution phase must be completed" in blocked.output
    assert "hint: fama complete" in blocked.output

    complete_result = runner.invoke(cli, ["complete"])
    assert complete_result.exit_code == 0
    assert "Completed phase E" in complete_result.output

    advance_result = runner.invoke(cli, ["advance"])
    assert advance_result.exit_code == 0
    assert "Advanced to V (Validation)" in advance_result.output

    context_result = runner.invoke(cli, ["context"])
    assert context_result.exit_code == 0
    assert "[CONTEXT_MANIFOLD]" in context_result.output
    assert "feature-developer" in context_result.output

    validate_result = runner.invoke(cli, ["validate", "check login", "--json"])
    assert validate_result.exit_code == 0
    assert '"loop_back": false' in validate_result.output
    assert '"passed": true' in validate_result.output

    finish_result = runner.invoke(cli, ["advance"])
    assert finish_result.exit_code == 0
    assert "Workflow complete." in finish_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["currentPhase"] == "V"
    assert status["complete"] is True
    assert status["loopBacks"] == 0
    assert len(status["phases"]["V"]["outputs"]) == 4


def test_gates_command_lists_gate_types(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["gates"])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["require_plan"] is True
    assert "require_security_audit" in payload["available"]
    assert payload["configured"] == []


def test_status_without_workflow_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "No active workflow" in result.output


def test_invalid_config_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "fama.toml").write_text("[project\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "Invalid TOML" in result.output
