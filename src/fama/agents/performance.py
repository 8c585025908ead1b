from __future__ import annotations

from fama.agents.base import Agent


class PerformanceOptimizerAgent(Agent):
    slug = "performance-optimizer"
    phases = ("V",)
    default_skills = ("verification",)
    default_tools = ("Read", "Grep", "Glob", "Edit", "Write", "Bash")
    playbook = """
You are the Performance Optimizer.
Measure before changing anything. Report hot paths, regressions and the evidence for each.
""".strip()
