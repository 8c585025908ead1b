from fama.backends.base import (
    CircuitOpenError,
    ExecutionProvider,
    ProviderError,
    ProviderEvent,
    ProviderProcessError,
    ProviderRequest,
    ProviderResult,
    ProviderTimeoutError,
    collect_result,
)
from fama.backends.claude import ClaudeCodeProvider
from fama.backends.resilient import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    ResilientProvider,
    RetryPolicy,
    is_transient_error,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "ClaudeCodeProvider",
    "ExecutionProvider",
    "ProviderError",
    "ProviderEvent",
    "ProviderProcessError",
    "ProviderRequest",
    "ProviderResult",
    "ProviderTimeoutError",
    "ResilientProvider",
    "RetryPolicy",
    "collect_result",
    "is_transient_error",
]
