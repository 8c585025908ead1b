from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from fama.errors import ConfigParseError
from fama.phases import Scale, parse_scale

ManifoldPolicy = Literal["always", "structured_only"]
BudgetValue = int | dict[str, int] | None

CONFIG_FILE = "fama.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    language: str = "python"


@dataclass(slots=True)
class GateDefinition:
    type: str
    phases: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)

    def applies_to(self, from_phase: str, to_phase: str) -> bool:
        return f"{from_phase}->{to_phase}" in self.phases

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "phases": list(self.phases)}
        if self.config:
            payload["config"] = dict(self.config)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateDefinition:
        if "type" not in data:
            raise ConfigParseError("Gate definition is missing 'type'.")
        return cls(
            type=str(data["type"]),
            phases=[str(item) for item in data.get("phases") or []],
            config=dict(data.get("config") or {}),
        )


@dataclass(slots=True)
class GatesConfig:
    require_plan: bool = True
    require_approval: bool = False
    gates: list[GateDefinition] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowConfig:
    default_scale: str = "MEDIUM"
    gates: GatesConfig = field(default_factory=GatesConfig)

    @property
    def scale(self) -> Scale:
        return parse_scale(self.default_scale)


@dataclass(slots=True)
class BudgetsConfig:
    skills: BudgetValue = None
    context: BudgetValue = None


@dataclass(slots=True)
class QualityWeights:
    completion: float = 0.30
    testing: float = 0.25
    security: float = 0.25
    review: float = 0.20

    def to_dict(self) -> dict[str, float]:
        return {
            "completion": self.completion,
            "testing": self.testing,
            "security": self.security,
            "review": self.review,
        }


@dataclass(slots=True)
class QualityConfig:
    minimum_score: int = 70
    loop_back_on_failure: bool = True
    max_loops: int = 2
    weights: QualityWeights = field(default_factory=QualityWeights)


@dataclass(slots=True)
class BackendConfig:
    binary: str = "claude"
    model: str | None = None
    max_turns: int = 50
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    retry_jitter: float = 0.3
    timeout_seconds: float = 300.0
    circuit_failure_threshold: int = 5
    circuit_reset_timeout_seconds: float = 30.0


@dataclass(slots=True)
class LlmFirstConfig:
    manifold_policy: ManifoldPolicy = "always"
    parallel_timeout_seconds: float | None = None


@dataclass(slots=True)
class FamaConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    budgets: BudgetsConfig = field(default_factory=BudgetsConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    llm_first: LlmFirstConfig = field(default_factory=LlmFirstConfig)

    @classmethod
    def default(cls) -> FamaConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FamaConfig:
        workflow = dict(data.get("workflow", {}))
        gates = GatesConfig(
            require_plan=bool(workflow.pop("require_plan", True)),
            require_approval=bool(workflow.pop("require_approval", False)),
            gates=[GateDefinition.from_dict(item) for item in data.get("gates", [])],
        )
        quality = dict(data.get("quality", {}))
        weights = QualityWeights(**quality.pop("weights", {}))
        llm_first = dict(data.get("llm_first", {}))
        policy = llm_first.get("manifold_policy", "always")
        if policy not in ("always", "structured_only"):
            raise ConfigParseError(f"Unsupported manifold_policy: {policy}")
        try:
            return cls(
                project=ProjectConfig(**data.get("project", {})),
                workflow=WorkflowConfig(gates=gates, **workflow),
                budgets=BudgetsConfig(**data.get("budgets", {})),
                quality=QualityConfig(weights=weights, **quality),
                backend=BackendConfig(**data.get("backend", {})),
                llm_first=LlmFirstConfig(**llm_first),
            )
        except TypeError as exc:
            raise ConfigParseError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": {
                "name": self.project.name,
                "language": self.project.language,
            },
            "workflow": {
                "default_scale": self.workflow.default_scale,
                "require_plan": self.workflow.gates.require_plan,
                "require_approval": self.workflow.gates.require_approval,
            },
            "budgets": {
                "skills": self.budgets.skills,
                "context": self.budgets.context,
            },
            "quality": {
                "minimum_score": self.quality.minimum_score,
                "loop_back_on_failure": self.quality.loop_back_on_failure,
                "max_loops": self.quality.max_loops,
                "weights": self.quality.weights.to_dict(),
            },
            "backend": {
                "binary": self.backend.binary,
                "model": self.backend.model,
                "max_turns": self.backend.max_turns,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "retry_jitter": self.backend.retry_jitter,
                "timeout_seconds": self.backend.timeout_seconds,
                "circuit_failure_threshold": self.backend.circuit_failure_threshold,
                "circuit_reset_timeout_seconds": self.backend.circuit_reset_timeout_seconds,
            },
            "llm_first": {
                "manifold_policy": self.llm_first.manifold_policy,
                "parallel_timeout_seconds": self.llm_first.parallel_timeout_seconds,
            },
            "gates": [gate.to_dict() for gate in self.workflow.gates.gates],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FamaConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "workflow", "budgets", "quality", "backend", "llm_first"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # unset optional values are omitted
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for gate in data["gates"]:
        lines.append("[[gates]]")
        for key, value in gate.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FamaConfig:
    if not path.exists():
        return FamaConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigParseError(f"Invalid TOML in {path}: {exc}") from exc
    return FamaConfig.from_dict(data)


def save_config(path: Path, config: FamaConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
