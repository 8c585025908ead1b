from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from fama.phases import Scale

TokenEstimator = Callable[[str], int]

BASE_CHARS_PER_TOKEN = 4.0
CODE_CHARS_PER_TOKEN_DISCOUNT = 0.5

_CODE_PATTERNS = [
    re.compile(r"[{}\[\]();]"),
    re.compile(r"[<>=!&|]+"),
    re.compile(
        r"\b(?:const|let|var|function|class|import|export|return|if|else|for|while)\b"
    ),
    re.compile(r"[a-z][A-Z]"),
    re.compile(r"^\s*(?://|#|/\*|\*)", re.MULTILINE),
    re.compile(r"\.\w+\("),
]


@dataclass(slots=True, frozen=True)
class BudgetAllocation:
    system_prompt: int
    skills: int
    context: int
    user_message: int
    output_reserve: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


BUDGET_PROFILES: dict[Scale, BudgetAllocation] = {
    Scale.QUICK: BudgetAllocation(2000, 1000, 500, 500, 2000),
    Scale.SMALL: BudgetAllocation(3000, 2000, 1500, 1000, 4000),
    Scale.MEDIUM: BudgetAllocation(4000, 4000, 4000, 2000, 8000),
    Scale.LARGE: BudgetAllocation(5000, 6000, 8000, 3000, 16000),
}

_SECTIONS = ("system_prompt", "skills", "context", "user_message")


def detect_code_ratio(text: str) -> float:
    if not text:
        return 0.0
    code_chars = 0
    for pattern in _CODE_PATTERNS:
        code_chars += sum(len(match.group(0)) for match in pattern.finditer(text))
    return min(code_chars / len(text), 1.0)


def estimate_tokens(text: str) -> int:
    """Character-based estimate, denser for code-like text."""
    if not text:
        return 0
    ratio = detect_code_ratio(text)
    chars_per_token = BASE_CHARS_PER_TOKEN - ratio * CODE_CHARS_PER_TOKEN_DISCOUNT
    return math.ceil(len(text) / chars_per_token)


def estimate_tokens_word_based(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text.split()) * 1.3)


def get_budget_for_scale(scale: int) -> BudgetAllocation:
    return BUDGET_PROFILES.get(scale, BUDGET_PROFILES[Scale.MEDIUM])


def create_custom_budget(
    overrides: Mapping[str, int],
    base: BudgetAllocation | None = None,
) -> BudgetAllocation:
    base = base or BUDGET_PROFILES[Scale.MEDIUM]
    unknown = set(overrides) - set(base.to_dict())
    if unknown:
        raise ValueError(f"Unknown budget sections: {', '.join(sorted(unknown))}")
    return replace(base, **dict(overrides))


def total_budget(allocation: BudgetAllocation) -> int:
    return sum(allocation.to_dict().values())


def resolve_budget(value: Any, scale: int, fallback: int) -> int:
    """Resolve a config budget that is either a flat int or a per-scale table."""
    if value is None:
        return fallback
    if isinstance(value, bool):
        return fallback
    if isinstance(value, int):
        return value
    if isinstance(value, Mapping):
        key = Scale(scale).name.lower()
        picked = value.get(key)
        if isinstance(picked, int) and not isinstance(picked, bool):
            return picked
    return fallback


@dataclass(slots=True)
class TokenUsage:
    allocation: BudgetAllocation
    system_prompt: int = 0
    skills: int = 0
    context: int = 0
    user_message: int = 0
    skills_skipped: list[str] = field(default_factory=list)
    context_truncated: bool = False

    def record(self, section: str, tokens: int) -> None:
        if section not in _SECTIONS:
            raise ValueError(f"Unknown budget section: {section}")
        setattr(self, section, getattr(self, section) + tokens)

    @property
    def total(self) -> int:
        return sum(getattr(self, section) for section in _SECTIONS)

    def remaining(self) -> dict[str, int]:
        return {
            section: getattr(self.allocation, section) - getattr(self, section)
            for section in _SECTIONS
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "system_prompt": self.system_prompt,
            "skills": self.skills,
            "context": self.context,
            "user_message": self.user_message,
            "total": self.total,
            "skills_skipped": list(self.skills_skipped),
            "context_truncated": self.context_truncated,
        }


def remaining_budget(usage: TokenUsage) -> int:
    # output reserve is never consumed by prompt sections
    return total_budget(usage.allocation) - usage.allocation.output_reserve - usage.total


def is_budget_exceeded(usage: TokenUsage) -> bool:
    return any(value < 0 for value in usage.remaining().values())


def truncate_to_token_budget(
    text: str,
    max_tokens: int,
    estimator: TokenEstimator = estimate_tokens,
) -> str:
    if not text:
        return ""
    current = estimator(text)
    if current <= max_tokens:
        return text

    chars_per_token = len(text) / current
    target_chars = math.floor(max_tokens * chars_per_token * 0.9)
    if target_chars <= 0:
        return ""

    truncated = text[:target_chars]
    break_point = max(truncated.rfind("."), truncated.rfind("\n"))
    if break_point > target_chars * 0.6:
        truncated = truncated[: break_point + 1]
    return truncated.rstrip() + "..."


def split_into_chunks(
    text: str,
    chunk_tokens: int,
    estimator: TokenEstimator = estimate_tokens,
) -> list[str]:
    if not text:
        return []
    chunks: list[str] = []
    current: list[str] = []
    current_tokens = 0
    for line in text.split("\n"):
        line_tokens = estimator(line + "\n")
        if current and current_tokens + line_tokens > chunk_tokens:
            chunks.append("\n".join(current))
            current = []
            current_tokens = 0
        current.append(line)
        current_tokens += line_tokens
    if current:
        chunks.append("\n".join(current))
    return chunks
