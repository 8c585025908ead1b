from __future__ import annotations

from fama.agents.base import Agent


class TestWriterAgent(Agent):
    __test__ = False

    slug = "test-writer"
    phases = ("E", "V")
    default_skills = ("test-driven-development",)
    default_tools = ("Read", "Grep", "Glob", "Edit", "Write", "Bash")
    playbook = """
You are the Test Writer.
Write deterministic tests for the changed behavior and run the suite.
Report coverage and whether all tests pass.
""".strip()
