from __future__ import annotations

from typing import Any


class FamaError(RuntimeError):
    """Base class for orchestration failures."""

    code: str = "FAMA_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class WorkflowStateError(FamaError):
    """Raised when workflow state is missing or malformed where one is required."""

    code = "WORKFLOW_STATE_ERROR"


class GateCheckError(FamaError):
    """Raised when a phase transition is blocked by a gate."""

    code = "GATE_CHECK_FAILED"

    def __init__(self, reason: str, *, hints: list[str] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.hints = list(hints or [])


class AgentExecutionError(FamaError):
    code = "AGENT_EXECUTION_ERROR"

    def __init__(self, message: str, *, agent: str | None = None) -> None:
        super().__init__(message)
        self.agent = agent


class ManifoldError(FamaError):
    """Raised when the context manifold cannot be read or written."""

    code = "MANIFOLD_ERROR"

    def __init__(self, message: str, *, code: str, file_path: str | None = None) -> None:
        super().__init__(message, code=code)
        self.file_path = file_path


class OutputParseError(FamaError):
    """Raised when an agent response does not carry a valid structured output."""

    code = "OUTPUT_PARSE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        issues: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.issues = list(issues or [])

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind, "message": str(self)}
        if self.issues:
            payload["issues"] = list(self.issues)
        return payload


class ConfigParseError(FamaError):
    code = "CONFIG_PARSE_ERROR"
