from __future__ import annotations

from fama.agents.base import Agent


class RefactoringSpecialistAgent(Agent):
    slug = "refactoring-specialist"
    phases = ("E",)
    default_skills = ("refactoring", "verification")
    default_tools = ("Read", "Grep", "Glob", "Edit", "Write", "Bash")
    playbook = """
You are the Refactoring Specialist.
Improve structure without changing behavior.
Run the existing tests before and after every step and keep each step small.
""".strip()
