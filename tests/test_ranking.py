import pytest

from fama.agents import Skill
from fama.ranking import (
    RankedItem,
    RankItem,
    compute_tf,
    cosine_similarity,
    rank,
    rank_skills_by_relevance,
    select_within_budget,
    tokenize,
)


def test_tokenize_drops_short_words_stopwords_and_punctuation() -> None:
    assert tokenize("The Quick brown-fox, is AT home!") == ["quick", "brown", "fox", "home"]
    assert tokenize("quando use para") == []


def test_term_frequency_and_cosine() -> None:
    tf = compute_tf(["auth", "auth", "token"])

    assert tf == {"auth": pytest.approx(2 / 3), "token": pytest.approx(1 / 3)}
    assert cosine_similarity(tf, tf) == pytest.approx(1.0)
    assert cosine_similarity(tf, {"database": 1.0}) == 0.0
    assert cosine_similarity({}, tf) == 0.0


def test_rank_orders_by_similarity_and_keeps_ties_stable() -> None:
    items = [
        RankItem(id="docs", text="documentation writing guide"),
        RankItem(id="tests", text="write unit tests for authentication"),
        RankItem(id="deploy", text="deployment checklist"),
        RankItem(id="release", text="release notes"),
    ]

    ranked = rank("add authentication tests", items)

    assert ranked[0].id == "tests"
    assert ranked[0].score > 0
    assert [item.id for item in ranked[1:]] == ["docs", "deploy", "release"]


def test_rank_without_meaningful_task_scores_zero_in_input_order() -> None:
    items = [RankItem(id="b", text="beta"), RankItem(id="a", text="alpha")]

    ranked = rank("", items)

    assert [item.id for item in ranked] == ["b", "a"]
    assert all(item.score == 0.0 for item in ranked)


def test_rank_skills_uses_name_and_description() -> None:
    skills = [
        Skill(slug="review", name="Code Review", description="Review pull requests", content="R"),
        Skill(slug="security", name="Security Audit", description="Find vulnerabilities", content="S"),
    ]

    ranked = rank_skills_by_relevance("audit security vulnerabilities", skills)

    assert ranked[0].id == "security"
    assert ranked[0].content == "S"


def test_tdd_skill_ranks_first_for_testing_task() -> None:
    skills = [
        Skill(slug="security-audit", name="Security Audit", description="Find vulnerabilities"),
        Skill(slug="code-review", name="Code Review", description="Review pull requests"),
        Skill(
            slug="test-driven-development",
            name="Test-Driven Development",
            description="Write unit tests first, then the code that makes them pass",
        ),
    ]

    ranked = rank_skills_by_relevance("write unit tests for the auth module", skills)

    assert ranked[0].id == "test-driven-development"


def test_select_within_budget_skips_items_that_do_not_fit() -> None:
    ranked = [
        RankedItem(id="a", content="aaaa", score=0.9),
        RankedItem(id="b", content="bbbbbbbbbb", score=0.5),
        RankedItem(id="c", content="cc", score=0.1),
    ]

    selection = select_within_budget(ranked, 7, estimator=len)

    assert [item.id for item in selection.selected] == ["a", "c"]
    assert selection.skipped_count == 1
    assert selection.total_tokens == 6
