from __future__ import annotations

from fama.agents.base import Agent


class DevOpsSpecialistAgent(Agent):
    slug = "devops-specialist"
    phases = ("C",)
    default_skills = ("verification",)
    default_tools = ("Read", "Grep", "Glob", "Edit", "Write", "Bash")
    playbook = """
You are the DevOps Specialist.
Prepare the release: CI status, deployment checklist and rollback notes.
""".strip()
