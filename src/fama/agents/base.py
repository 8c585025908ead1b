from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fama.backends.base import ExecutionProvider, ProviderError, ProviderRequest, collect_result
from fama.errors import AgentExecutionError
from fama.phases import Phase, Scale
from fama.ranking import rank_skills_by_relevance, select_within_budget
from fama.tokens import (
    BudgetAllocation,
    TokenUsage,
    estimate_tokens,
    get_budget_for_scale,
    is_budget_exceeded,
)

logger = logging.getLogger(__name__)

TOOL_POLICY_ALLOWLIST = {
    "Read",
    "Write",
    "Edit",
    "Bash",
    "Glob",
    "Grep",
    "WebFetch",
    "WebSearch",
    "Task",
}


@dataclass(slots=True)
class Skill:
    slug: str
    name: str
    description: str = ""
    content: str = ""


@dataclass(slots=True)
class PromptAssembly:
    text: str
    skills: list[str] = field(default_factory=list)
    skills_skipped: int = 0
    skill_tokens: int = 0
    usage: TokenUsage | None = None


@dataclass(slots=True)
class AgentResponse:
    agent: str
    content: str
    cost_usd: float | None = None
    turns: int | None = None
    duration_ms: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


class Agent:
    slug: str = "agent"
    phases: tuple[Phase, ...] = ()
    default_skills: tuple[str, ...] = ()
    default_tools: tuple[str, ...] = ("Read", "Glob", "Grep")
    playbook: str = "You are a software engineering agent."

    def __init__(self, provider: ExecutionProvider, *, model: str | None = None) -> None:
        self.provider = provider
        self.model = model

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: Sequence[str] | None) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise AgentExecutionError(
                "Tool policy rejected unknown tools for agent run: " + ", ".join(unknown)
            )
        return normalized

    def build_system_prompt(
        self,
        task: str,
        skills: Sequence[Skill] = (),
        skill_budget: int | None = None,
        context: str = "",
        allocation: BudgetAllocation | None = None,
    ) -> PromptAssembly:
        """Playbook, then the skills most relevant to ``task`` that fit the budget, then context.

        Without a budget every skill is kept in the given order. Section usage is
        tracked against ``allocation`` (the medium profile when omitted).
        """
        if skill_budget is None:
            chosen = [(skill.slug, skill.content) for skill in skills]
            skipped = 0
            skill_tokens = sum(estimate_tokens(content) for _, content in chosen)
        else:
            selection = select_within_budget(rank_skills_by_relevance(task, skills), skill_budget)
            chosen = [(item.id, item.content) for item in selection.selected]
            skipped = selection.skipped_count
            skill_tokens = selection.total_tokens
            if skipped:
                logger.info(
                    "Agent %s: %d skill(s) skipped to fit a %d token budget",
                    self.slug,
                    skipped,
                    skill_budget,
                )

        sections = [self.playbook.strip()]
        if chosen:
            sections.append(
                "## Active Skills\n\n" + "\n\n---\n\n".join(content.strip() for _, content in chosen)
            )
        if context.strip():
            sections.append(f"## Project Context\n\n{context.strip()}")

        kept = {slug for slug, _ in chosen}
        usage = TokenUsage(allocation or get_budget_for_scale(Scale.MEDIUM))
        usage.record("system_prompt", estimate_tokens(self.playbook.strip()))
        usage.record("skills", skill_tokens)
        usage.record("context", estimate_tokens(context.strip()))
        usage.record("user_message", estimate_tokens(task))
        usage.skills_skipped = [skill.slug for skill in skills if skill.slug not in kept]
        if is_budget_exceeded(usage):
            logger.warning(
                "Agent %s: prompt exceeds its token allocation: %s", self.slug, usage.remaining()
            )
        return PromptAssembly(
            text="\n\n".join(sections),
            skills=[slug for slug, _ in chosen],
            skills_skipped=skipped,
            skill_tokens=skill_tokens,
            usage=usage,
        )

    async def run(
        self,
        task: str,
        *,
        skills: Sequence[Skill] = (),
        skill_budget: int | None = None,
        context: str = "",
        allocation: BudgetAllocation | None = None,
        cwd: Path | None = None,
        max_turns: int | None = None,
        allowed_tools: Sequence[str] | None = None,
    ) -> AgentResponse:
        assembly = self.build_system_prompt(task, skills, skill_budget, context, allocation)
        tools = self._normalize_allowed_tools(allowed_tools) or list(self.default_tools)
        request = ProviderRequest(
            task=task,
            system_prompt=assembly.text,
            allowed_tools=tools,
            model=self.model,
            max_turns=max_turns,
            cwd=cwd,
        )
        logger.debug("Running agent %s with %d skill(s)", self.slug, len(assembly.skills))
        started = time.monotonic()
        try:
            result = await collect_result(self.provider, request)
        except ProviderError as exc:
            raise AgentExecutionError(f"Agent {self.slug} failed: {exc}", agent=self.slug) from exc
        return AgentResponse(
            agent=self.slug,
            content=result.text,
            cost_usd=result.cost_usd,
            turns=result.turns,
            duration_ms=int((time.monotonic() - started) * 1000),
            metadata={
                "task": task,
                "skills": list(assembly.skills),
                "skills_skipped": assembly.skills_skipped,
                "token_usage": assembly.usage.to_dict() if assembly.usage else None,
                "allowed_tools": tools,
            },
        )
