from __future__ import annotations

from fama.agents.base import Agent


class BugFixerAgent(Agent):
    slug = "bug-fixer"
    phases = ("E",)
    default_skills = ("systematic-debugging", "test-driven-development")
    default_tools = ("Read", "Grep", "Glob", "Edit", "Write", "Bash")
    playbook = """
You are the Bug Fixer.
Reproduce the failure with a test before changing code, then find the root cause.
Fix the cause rather than the symptom and confirm the reproducing test now passes.
""".strip()
