from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from fama.tokens import TokenEstimator, estimate_tokens

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has", "he",
        "in", "is", "it", "its", "of", "on", "or", "that", "the", "to", "was", "were",
        "will", "with", "you", "your",
        "um", "uma", "e", "ou", "de", "da", "do", "para", "com", "no", "na", "em",
        "que", "se", "por", "ao", "os", "mais", "quando", "use", "when",
    }
)

_NON_WORD = re.compile(r"[^a-z0-9\s]")


class SkillLike(Protocol):
    slug: str
    name: str
    description: str
    content: str


@dataclass(slots=True, frozen=True)
class RankItem:
    id: str
    text: str
    content: str = ""


@dataclass(slots=True, frozen=True)
class RankedItem:
    id: str
    content: str
    score: float


@dataclass(slots=True)
class BudgetSelection:
    selected: list[RankedItem] = field(default_factory=list)
    skipped_count: int = 0
    total_tokens: int = 0


def tokenize(text: str) -> list[str]:
    cleaned = _NON_WORD.sub(" ", text.lower())
    return [token for token in cleaned.split() if len(token) > 2 and token not in STOPWORDS]


def compute_tf(tokens: Sequence[str]) -> dict[str, float]:
    if not tokens:
        return {}
    total = len(tokens)
    return {term: count / total for term, count in Counter(tokens).items()}


def cosine_similarity(a: dict[str, float], b: dict[str, float]) -> float:
    dot = sum(weight * b[term] for term, weight in a.items() if term in b)
    norm_a = math.sqrt(sum(weight * weight for weight in a.values()))
    norm_b = math.sqrt(sum(weight * weight for weight in b.values()))
    denominator = norm_a * norm_b
    if denominator == 0:
        return 0.0
    return dot / denominator


def rank(task: str, items: Iterable[RankItem]) -> list[RankedItem]:
    """Rank items by TF cosine similarity between the task and each item's descriptor.

    Ties keep their input order. An empty task, or one with no meaningful tokens,
    yields every item with score 0 in input order.
    """
    items = list(items)
    task_tokens = tokenize(task) if task else []
    if not task_tokens:
        return [RankedItem(id=item.id, content=item.content, score=0.0) for item in items]

    task_tf = compute_tf(task_tokens)
    scored = [
        RankedItem(
            id=item.id,
            content=item.content,
            score=cosine_similarity(task_tf, compute_tf(tokenize(item.text))),
        )
        for item in items
    ]
    return sorted(scored, key=lambda ranked: -ranked.score)


def rank_skills_by_relevance(task: str, skills: Iterable[SkillLike]) -> list[RankedItem]:
    return rank(
        task,
        (
            RankItem(id=skill.slug, text=f"{skill.name} {skill.description}", content=skill.content)
            for skill in skills
        ),
    )


def select_within_budget(
    ranked: Iterable[RankedItem],
    budget: int,
    estimator: TokenEstimator = estimate_tokens,
) -> BudgetSelection:
    selection = BudgetSelection()
    for item in ranked:
        tokens = estimator(item.content)
        if selection.total_tokens + tokens <= budget:
            selection.selected.append(item)
            selection.total_tokens += tokens
        else:
            selection.skipped_count += 1
    return selection
