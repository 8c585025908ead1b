from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal


class ProviderError(RuntimeError):
    """Raised when an execution provider fails to produce a result."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.exit_code = exit_code
        self.retriable = retriable


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds its deadline."""


class ProviderProcessError(ProviderError):
    """Raised when the provider process cannot be started or read."""


class CircuitOpenError(ProviderError):
    """Raised when calls are refused because the provider's circuit is open."""

    def __init__(self, provider: str, retry_in_seconds: float) -> None:
        super().__init__(
            f"Circuit open for provider {provider}; retry in {retry_in_seconds:.1f}s",
            provider=provider,
            retriable=False,
        )
        self.retry_in_seconds = retry_in_seconds


@dataclass(slots=True)
class ProviderRequest:
    task: str
    system_prompt: str = ""
    allowed_tools: list[str] | None = None
    model: str | None = None
    max_turns: int | None = None
    cwd: Path | None = None


@dataclass(slots=True)
class ProviderEvent:
    type: Literal["text", "result", "error"]
    text: str = ""
    cost_usd: float | None = None
    turns: int | None = None
    errors: list[str] = field(default_factory=list)
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class ProviderResult:
    text: str
    cost_usd: float | None = None
    turns: int | None = None


class ExecutionProvider(ABC):
    name: str = "provider"

    @abstractmethod
    def query(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        """Run one agent request and stream events, ending with a result or error."""


async def collect_result(provider: ExecutionProvider, request: ProviderRequest) -> ProviderResult:
    chunks: list[str] = []
    async for event in provider.query(request):
        if event.type == "text":
            chunks.append(event.text)
        elif event.type == "result":
            return ProviderResult(
                text=event.text or "".join(chunks).strip(),
                cost_usd=event.cost_usd,
                turns=event.turns,
            )
        else:
            message = "; ".join(event.errors) or event.text or "Provider reported an error."
            raise ProviderError(message, provider=provider.name)
    return ProviderResult(text="".join(chunks).strip())
