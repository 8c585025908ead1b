from __future__ import annotations

from fama.agents.base import Agent


class FeatureDeveloperAgent(Agent):
    slug = "feature-developer"
    phases = ("E",)
    default_skills = ("test-driven-development", "verification")
    default_tools = ("Read", "Grep", "Glob", "Edit", "Write", "Bash")
    playbook = """
You are the Feature Developer.
Implement exactly what the plan describes, test first.
Match repository conventions and keep changes small and reviewable.
""".strip()
