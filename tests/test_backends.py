import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from fama.backends import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
    ClaudeCodeProvider,
    ExecutionProvider,
    ProviderError,
    ProviderEvent,
    ProviderProcessError,
    ProviderRequest,
    ProviderTimeoutError,
    ResilientProvider,
    RetryPolicy,
    collect_result,
    is_transient_error,
)


class FakeStream:
    def __init__(self, lines: list[str]) -> None:
        self._lines = [f"{line}\n".encode() for line in lines]

    def __aiter__(self) -> "FakeStream":
        return self

    async def __anext__(self) -> bytes:
        if not self._lines:
            raise StopAsyncIteration
        return self._lines.pop(0)


class FakeStderr:
    def __init__(self, text: str) -> None:
        self._text = text

    async def read(self) -> bytes:
        return self._text.encode()


class FakeProcess:
    def __init__(self, lines: list[str], returncode: int = 0, stderr: str = "") -> None:
        self.stdout = FakeStream(lines)
        self.stderr = FakeStderr(stderr)
        self.returncode = returncode

    async def wait(self) -> int:
        return self.returncode


def _patch_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> list[tuple[Any, ...]]:
    calls: list[tuple[Any, ...]] = []

    async def fake_exec(*command: Any, **kwargs: Any) -> FakeProcess:
        calls.append(command)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return calls


class ScriptedProvider(ExecutionProvider):
    name = "scripted"

    def __init__(self, failures: list[Exception], text: str = "done") -> None:
        self.failures = list(failures)
        self.text = text
        self.calls = 0

    async def query(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        _ = request
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        yield ProviderEvent(type="text", text="working")
        yield ProviderEvent(type="result", text=self.text, cost_usd=0.01, turns=2)


class SlowProvider(ExecutionProvider):
    name = "slow"

    async def query(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        _ = request
        await asyncio.sleep(1)
        yield ProviderEvent(type="result", text="late")


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _fast_policy(max_retries: int = 3, timeout_seconds: float | None = 5.0) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max_retries, base_delay_seconds=0.0, timeout_seconds=timeout_seconds, jitter=0.0
    )


def test_claude_build_command_shape() -> None:
    provider = ClaudeCodeProvider(binary="claude", working_directory=Path("."))
    command = provider.build_command(
        ProviderRequest(
            task="implement feature",
            system_prompt="be careful",
            allowed_tools=["Read", "Edit"],
            model="sonnet",
            max_turns=12,
        )
    )

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "stream-json" in command
    assert "--verbose" in command
    assert command[command.index("--append-system-prompt") + 1] == "be careful"
    assert command[command.index("--model") + 1] == "sonnet"
    assert command[command.index("--max-turns") + 1] == "12"
    assert command[command.index("--allowedTools") + 1] == "Read,Edit"


def test_claude_minimal_command_has_no_optional_flags() -> None:
    command = ClaudeCodeProvider().build_command(ProviderRequest(task="hi"))

    assert "--model" not in command
    assert "--allowedTools" not in command
    assert "--append-system-prompt" not in command


def test_claude_stream_parsing(monkeypatch: pytest.MonkeyPatch) -> None:
    assistant = {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hello"}]}}
    result = {
        "type": "result",
        "subtype": "success",
        "result": "Final answer",
        "total_cost_usd": 0.42,
        "num_turns": 3,
    }
    lines = [
        json.dumps({"type": "system", "subtype": "init"}),
        json.dumps(assistant),
        '{"type": "assistant", "message": {"content": [{"type": "text",',
        '"text": " world"}]}}',
        "plain output",
        json.dumps(result),
    ]
    calls = _patch_process(monkeypatch, FakeProcess(lines))
    provider = ClaudeCodeProvider()

    async def _run() -> list[ProviderEvent]:
        return [event async for event in provider.query(ProviderRequest(task="go"))]

    events = asyncio.run(_run())

    assert [event.type for event in events] == ["text", "text", "text", "result"]
    assert [event.text for event in events[:3]] == ["Hello", " world", "plain output"]
    assert events[-1].cost_usd == 0.42
    assert events[-1].turns == 3
    assert calls[0][0] == "claude"


def test_collect_result_prefers_result_text(monkeypatch: pytest.MonkeyPatch) -> None:
    lines = [
        json.dumps({"type": "text", "content": "partial "}),
        json.dumps({"type": "result", "subtype": "success", "result": "", "num_turns": 1}),
    ]
    _patch_process(monkeypatch, FakeProcess(lines))

    result = asyncio.run(collect_result(ClaudeCodeProvider(), ProviderRequest(task="go")))

    assert result.text == "partial"
    assert result.turns == 1


def test_claude_error_result_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    lines = [
        json.dumps(
            {"type": "result", "subtype": "error_max_turns", "is_error": True, "errors": ["too many turns"]}
        )
    ]
    _patch_process(monkeypatch, FakeProcess(lines))

    with pytest.raises(ProviderError, match="too many turns"):
        asyncio.run(collect_result(ClaudeCodeProvider(), ProviderRequest(task="go")))


def test_claude_nonzero_exit_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_process(monkeypatch, FakeProcess([], returncode=2, stderr="auth failed"))

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(collect_result(ClaudeCodeProvider(), ProviderRequest(task="go")))

    assert exc_info.value.exit_code == 2
    assert "auth failed" in str(exc_info.value)


def test_claude_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def missing(*command: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)

    with pytest.raises(ProviderProcessError) as exc_info:
        asyncio.run(collect_result(ClaudeCodeProvider(binary="nope"), ProviderRequest(task="go")))

    assert not exc_info.value.retriable


def test_transient_error_detection() -> None:
    assert is_transient_error("HTTP 429 Too Many Requests")
    assert is_transient_error(ProviderError("Rate limit exceeded"))
    assert is_transient_error("read ECONNRESET")
    assert is_transient_error(ProviderTimeoutError("slow"))
    assert is_transient_error(TimeoutError())
    assert not is_transient_error("invalid api key")
    assert not is_transient_error(ValueError("bad input"))


def test_retry_delay_doubles() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, jitter=0.0)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]
    jittered = RetryPolicy(base_delay_seconds=1.0, jitter=0.3).delay_for(2)
    assert 2.0 <= jittered <= 2.6


def test_resilient_provider_retries_transient_errors() -> None:
    events: list[dict[str, Any]] = []
    inner = ScriptedProvider(
        [ProviderError("HTTP 503 from upstream"), ProviderError("connection reset by peer")]
    )
    provider = ResilientProvider(inner, retry_policy=_fast_policy(), event_hook=events.append)

    result = asyncio.run(collect_result(provider, ProviderRequest(task="go")))

    assert result.text == "done"
    assert result.cost_usd == 0.01
    assert inner.calls == 3
    names = [event["event"] for event in events]
    assert names.count("provider_retry") == 2
    assert names.count("provider_attempt_failed") == 2
    assert provider.breakers.get("scripted").state == CircuitState.CLOSED


def test_resilient_provider_fails_fast_on_permanent_errors() -> None:
    inner = ScriptedProvider([ProviderError("invalid api key")])
    provider = ResilientProvider(inner, retry_policy=_fast_policy())

    with pytest.raises(ProviderError, match="invalid api key"):
        asyncio.run(collect_result(provider, ProviderRequest(task="go")))

    assert inner.calls == 1


def test_resilient_provider_wraps_unexpected_exceptions() -> None:
    inner = ScriptedProvider([ValueError("bad payload")])
    provider = ResilientProvider(inner, retry_policy=_fast_policy())

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(collect_result(provider, ProviderRequest(task="go")))

    assert not exc_info.value.retriable
    assert isinstance(exc_info.value.__cause__, ValueError)


def test_resilient_provider_gives_up_after_max_retries() -> None:
    inner = ScriptedProvider([ProviderError("429 rate limit")] * 5)
    provider = ResilientProvider(inner, retry_policy=_fast_policy(max_retries=2))

    with pytest.raises(ProviderError, match="failed after 3 attempts"):
        asyncio.run(collect_result(provider, ProviderRequest(task="go")))

    assert inner.calls == 3


def test_resilient_provider_times_out_attempts() -> None:
    provider = ResilientProvider(
        SlowProvider(), retry_policy=_fast_policy(max_retries=0, timeout_seconds=0.01)
    )

    with pytest.raises(ProviderError, match="timed out"):
        asyncio.run(collect_result(provider, ProviderRequest(task="go")))


def test_circuit_breaker_transitions() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(
        "claude", failure_threshold=2, reset_timeout_seconds=10.0, clock=clock
    )

    breaker.record_failure()
    assert breaker.can_execute()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert not breaker.can_execute()
    clock.now += 4
    assert breaker.retry_in_seconds() == pytest.approx(6.0)

    clock.now += 6
    assert breaker.can_execute()
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED

    breaker.trip()
    clock.now += 10
    assert breaker.can_execute()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert breaker.get_status().to_dict()["state"] == "open"


def test_open_circuit_refuses_calls() -> None:
    events: list[dict[str, Any]] = []
    breakers = CircuitBreakerRegistry(failure_threshold=1, clock=FakeClock())
    inner = ScriptedProvider([ProviderError("invalid api key")])
    provider = ResilientProvider(
        inner, retry_policy=_fast_policy(), breakers=breakers, event_hook=events.append
    )

    with pytest.raises(ProviderError, match="invalid api key"):
        asyncio.run(collect_result(provider, ProviderRequest(task="go")))
    with pytest.raises(CircuitOpenError) as exc_info:
        asyncio.run(collect_result(provider, ProviderRequest(task="go")))

    assert inner.calls == 1
    assert exc_info.value.retry_in_seconds == pytest.approx(30.0)
    assert events[-1] == {"event": "circuit_open", "provider": "scripted"}


def test_breaker_registry_shares_breakers_by_name() -> None:
    registry = CircuitBreakerRegistry(failure_threshold=1)
    breaker = registry.get("claude")

    assert registry.get("claude") is breaker
    breaker.record_failure()
    assert registry.all()["claude"].state == CircuitState.OPEN

    registry.reset_all()
    assert breaker.state == CircuitState.CLOSED
    registry.clear()
    assert registry.all() == {}
