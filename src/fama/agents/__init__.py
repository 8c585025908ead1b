from fama.agents.architect import ArchitectAgent
from fama.agents.base import (
    TOOL_POLICY_ALLOWLIST,
    Agent,
    AgentResponse,
    PromptAssembly,
    Skill,
)
from fama.agents.bugfixer import BugFixerAgent
from fama.agents.developer import FeatureDeveloperAgent
from fama.agents.devops import DevOpsSpecialistAgent
from fama.agents.documenter import DocumentationWriterAgent
from fama.agents.performance import PerformanceOptimizerAgent
from fama.agents.refactoring import RefactoringSpecialistAgent
from fama.agents.reviewer import CodeReviewerAgent
from fama.agents.security import SecurityAuditorAgent
from fama.agents.tester import TestWriterAgent
from fama.backends.base import ExecutionProvider

AGENT_TYPES: dict[str, type[Agent]] = {
    agent.slug: agent
    for agent in (
        ArchitectAgent,
        FeatureDeveloperAgent,
        BugFixerAgent,
        RefactoringSpecialistAgent,
        TestWriterAgent,
        CodeReviewerAgent,
        SecurityAuditorAgent,
        DocumentationWriterAgent,
        PerformanceOptimizerAgent,
        DevOpsSpecialistAgent,
    )
}


def build_agents(provider: ExecutionProvider, model: str | None = None) -> dict[str, Agent]:
    return {slug: agent_type(provider, model=model) for slug, agent_type in AGENT_TYPES.items()}


__all__ = [
    "AGENT_TYPES",
    "Agent",
    "AgentResponse",
    "ArchitectAgent",
    "BugFixerAgent",
    "CodeReviewerAgent",
    "DevOpsSpecialistAgent",
    "DocumentationWriterAgent",
    "FeatureDeveloperAgent",
    "PerformanceOptimizerAgent",
    "PromptAssembly",
    "RefactoringSpecialistAgent",
    "SecurityAuditorAgent",
    "Skill",
    "TOOL_POLICY_ALLOWLIST",
    "TestWriterAgent",
    "build_agents",
]
