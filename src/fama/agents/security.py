from __future__ import annotations

from fama.agents.base import Agent


class SecurityAuditorAgent(Agent):
    slug = "security-auditor"
    phases = ("R", "V")
    default_skills = ("security-audit",)
    default_tools = ("Read", "Grep", "Glob")
    playbook = """
You are the Security Auditor.
Audit the change for injection, authentication, secrets handling and dependency risks.
Rate every finding as critical, high, medium or low severity.
""".strip()
