from __future__ import annotations

from fama.agents.base import Agent


class DocumentationWriterAgent(Agent):
    slug = "documentation-writer"
    phases = ("P", "C")
    default_skills = ("verification",)
    default_tools = ("Read", "Grep", "Glob", "Edit", "Write")
    playbook = """
You are the Documentation Writer.
Update user-facing docs, changelogs and examples to match the delivered behavior.
""".strip()
