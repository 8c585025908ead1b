from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Literal

logger = logging.getLogger(__name__)

Phase = Literal["P", "R", "E", "V", "C"]

PHASE_ORDER: tuple[Phase, ...] = ("P", "R", "E", "V", "C")


class Scale(IntEnum):
    QUICK = 0
    SMALL = 1
    MEDIUM = 2
    LARGE = 3


SCALE_PHASES: dict[Scale, tuple[Phase, ...]] = {
    Scale.QUICK: ("E", "V"),
    Scale.SMALL: ("P", "E", "V"),
    Scale.MEDIUM: ("P", "R", "E", "V"),
    Scale.LARGE: ("P", "R", "E", "V", "C"),
}

_SCALE_ALIASES: dict[str, Scale] = {
    "QUICK": Scale.QUICK,
    "RAPIDO": Scale.QUICK,
    "SMALL": Scale.SMALL,
    "PEQUENO": Scale.SMALL,
    "MEDIUM": Scale.MEDIUM,
    "MEDIO": Scale.MEDIUM,
    "LARGE": Scale.LARGE,
    "GRANDE": Scale.LARGE,
}


@dataclass(slots=True, frozen=True)
class PhaseDefinition:
    phase: Phase
    name: str
    description: str
    order: int
    agents: tuple[str, ...] = field(default_factory=tuple)
    skills: tuple[str, ...] = field(default_factory=tuple)
    optional: bool = False


PHASE_DEFINITIONS: dict[Phase, PhaseDefinition] = {
    "P": PhaseDefinition(
        phase="P",
        name="Planning",
        description="Break the request down, design the approach and write the plan.",
        order=0,
        agents=("architect", "documentation-writer"),
        skills=("brainstorming", "writing-plans", "feature-breakdown", "implementation-readiness"),
        optional=True,
    ),
    "R": PhaseDefinition(
        phase="R",
        name="Review",
        description="Review the plan for architecture, security and readiness.",
        order=1,
        agents=("architect", "code-reviewer", "security-auditor"),
        skills=("code-review", "security-audit", "implementation-readiness"),
        optional=True,
    ),
    "E": PhaseDefinition(
        phase="E",
        name="Execution",
        description="Implement the plan with tests.",
        order=2,
        agents=("feature-developer", "bug-fixer", "test-writer", "refactoring-specialist"),
        skills=("executing-plans", "test-driven-development", "systematic-debugging"),
    ),
    "V": PhaseDefinition(
        phase="V",
        name="Validation",
        description="Verify tests, security and code quality of the implementation.",
        order=3,
        agents=("test-writer", "code-reviewer", "security-auditor", "performance-optimizer"),
        skills=("verification", "test-driven-development", "code-review"),
    ),
    "C": PhaseDefinition(
        phase="C",
        name="Confirmation",
        description="Document, prepare the release and confirm delivery.",
        order=4,
        agents=("documentation-writer", "devops-specialist"),
        skills=("verification", "deployment-checklist", "release-notes", "documentation-review"),
        optional=True,
    ),
}


def phases_for_scale(scale: int) -> tuple[Phase, ...]:
    return SCALE_PHASES.get(Scale(scale), SCALE_PHASES[Scale.MEDIUM])


def phase_index(phase: Phase) -> int:
    return PHASE_ORDER.index(phase)


def is_phase(value: str) -> bool:
    return value in PHASE_ORDER


def parse_scale(value: str | int | None) -> Scale:
    """Parse a scale name (English or Portuguese) or ordinal, defaulting to MEDIUM."""
    if value is None:
        return Scale.MEDIUM
    if isinstance(value, int):
        try:
            return Scale(value)
        except ValueError:
            logger.warning("Unknown scale %r, using MEDIUM", value)
            return Scale.MEDIUM
    normalized = value.strip().upper()
    if normalized.isdigit():
        return parse_scale(int(normalized))
    scale = _SCALE_ALIASES.get(normalized)
    if scale is None:
        logger.warning("Unknown scale %r, using MEDIUM", value)
        return Scale.MEDIUM
    return scale


def scale_label(scale: int) -> str:
    return Scale(scale).name.capitalize()
