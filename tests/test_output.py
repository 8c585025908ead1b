import json
from typing import Any

import pytest

from fama.errors import OutputParseError
from fama.output import (
    Issue,
    add_issue,
    build_output_from_result,
    create_error_output,
    create_success_output,
    extract_artifacts,
    extract_summary,
    parse_structured_output,
    truncate_summary,
)


def _payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "schemaVersion": "1.0.0",
        "meta": {
            "agent": "architect",
            "skill": None,
            "phase": "P",
            "timestamp": "2026-01-01T00:00:00+00:00",
            "tokensUsed": 120,
        },
        "result": {"status": "success", "summary": "Designed the auth module"},
        "artifacts": [{"type": "file", "path": "docs/plan.md"}],
        "decisions": [
            {
                "id": "D1",
                "decision": "Use JWT",
                "rationale": "Stateless sessions",
                "alternativesConsidered": ["Server sessions"],
                "reversibility": "hard",
            }
        ],
        "issues": [],
        "handoff": {
            "nextPhase": "R",
            "requiredContext": [],
            "blockingIssues": [],
            "suggestedAgents": ["code-reviewer"],
        },
    }
    payload.update(overrides)
    return payload


def test_parse_prefers_fenced_json_block() -> None:
    text = "Here is my plan.\n```json\n" + json.dumps(_payload()) + "\n```\nThanks."

    parsed = parse_structured_output(text)

    assert parsed.success
    assert parsed.output is not None
    assert parsed.output.meta.agent == "architect"
    assert parsed.output.decisions[0].alternatives_considered == ["Server sessions"]
    assert parsed.output.to_dict()["decisions"][0]["alternativesConsidered"] == ["Server sessions"]


def test_parse_whole_text_json() -> None:
    parsed = parse_structured_output(json.dumps(_payload()))

    assert parsed.success
    assert parsed.output is not None
    assert parsed.output.handoff.next_phase == "R"


def test_parse_reports_json_errors() -> None:
    parsed = parse_structured_output("definitely not json")

    assert not parsed.success
    assert parsed.error is not None
    assert parsed.error.kind == "json"


def test_parse_reports_schema_issues_with_paths() -> None:
    payload = _payload()
    del payload["handoff"]

    parsed = parse_structured_output(json.dumps(payload))

    assert parsed.error is not None
    assert parsed.error.kind == "validation"
    assert any(issue["path"] == "handoff" for issue in parsed.error.issues)
    assert parsed.error.to_dict()["type"] == "validation"


def test_summary_is_limited_to_two_hundred_chars() -> None:
    summary = truncate_summary("word " * 60)

    assert len(summary) <= 200
    assert summary.endswith("...")
    assert truncate_summary("short") == "short"
    assert len(create_success_output("a", "E", "x" * 500).result.summary) <= 200


def test_error_output_blocks_handoff() -> None:
    output = create_error_output("feature-developer", "E", "provider crashed")

    assert output.result.status == "error"
    assert output.issues[0].severity == "critical"
    assert output.handoff.blocking_issues == ["execution-error"]


def test_add_issue_blocks_only_severe_issues() -> None:
    output = create_success_output("code-reviewer", "V", "Reviewed")

    add_issue(output, Issue(id="I1", description="naming", severity="low"))
    add_issue(output, Issue(id="I2", description="sql injection", severity="high"))

    assert [issue.id for issue in output.issues] == ["I1", "I2"]
    assert output.handoff.blocking_issues == ["I2"]


def test_extract_summary_and_artifacts() -> None:
    text = "I created src/app.py and updated `README.md`. See https://example.com/a.html"

    assert extract_summary("  done  ") == "done"
    assert extract_summary("First part. " + "y" * 600, 100).endswith("...")
    assert extract_artifacts(text) == ["src/app.py", "README.md"]
    assert extract_artifacts("") == []


def test_build_output_uses_structured_payload_and_sets_phase() -> None:
    output = build_output_from_result(json.dumps(_payload()), "R", "architect")

    assert output.meta.phase == "R"
    assert output.artifacts[0].path == "docs/plan.md"


def test_build_output_degrades_to_heuristics_by_default() -> None:
    output = build_output_from_result("Created src/x.py. Done.", "E", "feature-developer")

    assert output.result.status == "success"
    assert output.result.summary == "Created src/x.py. Done."
    assert [artifact.path for artifact in output.artifacts] == ["src/x.py"]
    assert build_output_from_result(None, "E", "x").result.summary == "No output produced."


def test_build_output_strict_policy_raises_parse_error() -> None:
    with pytest.raises(OutputParseError) as excinfo:
        build_output_from_result("plain text", "E", "feature-developer", "structured_only")

    assert excinfo.value.kind == "json"
