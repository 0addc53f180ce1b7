"""
Fixed build topology: phase order and the agent serving each phase.
"""

from dataclasses import dataclass
from typing import Optional

from buildchain.core.models import BuildPhase, ModelTier
from buildchain.core.pipeline.validation import (
    SOURCE_SUFFIXES,
    TEST_NAME_MARKERS,
    FileCheck,
)


@dataclass(frozen=True)
class PhaseSpec:
    """Agent binding for one phase, with the project files it needs and leaves behind."""
    phase: BuildPhase
    agent: str
    model_tier: ModelTier = ModelTier.COMPLEX
    max_turns: Optional[int] = None
    requires: Optional[FileCheck] = None
    produces: Optional[FileCheck] = None


PHASE_ORDER = [
    BuildPhase.DISCOVERY,
    BuildPhase.ANALYST,
    BuildPhase.ARCHITECT,
    BuildPhase.TEST_WRITER,
    BuildPhase.DEVELOPER,
    BuildPhase.QA,
    BuildPhase.REVIEWER,
    BuildPhase.DELIVERY,
]

# Phases driven by the retry loop controller
LOOP_PHASES = frozenset({BuildPhase.DEVELOPER, BuildPhase.QA, BuildPhase.REVIEWER})

ARCHITECTURE_DOC = "specs/architecture.md"

PHASE_SPECS = {
    BuildPhase.DISCOVERY: PhaseSpec(BuildPhase.DISCOVERY, "build-discovery", ModelTier.FAST, 15),
    BuildPhase.ANALYST: PhaseSpec(BuildPhase.ANALYST, "build-analyst", ModelTier.COMPLEX, 25),
    BuildPhase.ARCHITECT: PhaseSpec(
        BuildPhase.ARCHITECT,
        "build-architect",
        produces=FileCheck("validation.not_generated", paths=(ARCHITECTURE_DOC,)),
    ),
    BuildPhase.TEST_WRITER: PhaseSpec(
        BuildPhase.TEST_WRITER,
        "build-test-writer",
        requires=FileCheck("validation.missing_file", paths=(ARCHITECTURE_DOC,)),
    ),
    BuildPhase.DEVELOPER: PhaseSpec(
        BuildPhase.DEVELOPER,
        "build-developer",
        requires=FileCheck("validation.no_tests", name_markers=TEST_NAME_MARKERS),
    ),
    BuildPhase.QA: PhaseSpec(
        BuildPhase.QA,
        "build-qa",
        requires=FileCheck("validation.no_sources", suffixes=SOURCE_SUFFIXES),
    ),
    BuildPhase.REVIEWER: PhaseSpec(BuildPhase.REVIEWER, "build-reviewer"),
    BuildPhase.DELIVERY: PhaseSpec(BuildPhase.DELIVERY, "build-delivery", ModelTier.FAST),
}


def all_agents() -> list[str]:
    """Every agent identity the pipeline can lease."""
    return [spec.agent for spec in PHASE_SPECS.values()]
