from __future__ import annotations

from fama.agents.base import Agent


class CodeReviewerAgent(Agent):
    slug = "code-reviewer"
    phases = ("R", "V")
    default_skills = ("code-review", "verification")
    default_tools = ("Read", "Grep", "Glob")
    playbook = """
You are the Code Reviewer.
Find correctness, maintainability and readability problems.
Classify findings as major issues or minor suggestions, and say LGTM when there are none.
""".strip()
