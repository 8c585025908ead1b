from __future__ import annotations

from fama.agents.base import Agent


class ArchitectAgent(Agent):
    slug = "architect"
    phases = ("P", "R")
    default_skills = ("brainstorming", "feature-breakdown")
    default_tools = ("Read", "Grep", "Glob")
    playbook = """
You are the Software Architect.
Design the system architecture and break features down into implementable steps.
Record each design decision with its rationale and the alternatives you rejected.
""".strip()
