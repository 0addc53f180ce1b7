"""
Phase Output Parser
===================

Converts the free-text output of each build phase into a typed result:

- Discovery  -> DiscoveryResult   (DISCOVERY_COMPLETE / DISCOVERY_QUESTIONS)
- Analyst    -> ProjectBrief      (PROJECT_NAME: ... key lines)
- QA         -> VerificationResult (last line VERIFICATION: PASS | FAIL | <reason>)
- Reviewer   -> ReviewResult      (last line REVIEW: APPROVED | CHANGES_REQUESTED | <feedback>)
- Delivery   -> BuildSummary      (BUILD_COMPLETE + key lines)

Every parser is whitespace tolerant and raises ParseError when a required
marker is missing or malformed. Callers count a ParseError against the same
retry budget as a transport failure.
"""

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, ClassVar, Optional

import structlog

from buildchain.core.pipeline.errors import ParseError

logger = structlog.get_logger()


# ==========================================================================
# Marker Grammar
# ==========================================================================

VERIFICATION_PASS_RE = re.compile(r"^VERIFICATION:\s*PASS$")
VERIFICATION_FAIL_RE = re.compile(r"^VERIFICATION:\s*FAIL\s*\|\s*(?P<reason>\S.*)$")
REVIEW_APPROVED_RE = re.compile(r"^REVIEW:\s*APPROVED$")
REVIEW_CHANGES_RE = re.compile(r"^REVIEW:\s*CHANGES_REQUESTED\s*\|\s*(?P<feedback>\S.*)$")

DISCOVERY_COMPLETE = "DISCOVERY_COMPLETE"
DISCOVERY_QUESTIONS = "DISCOVERY_QUESTIONS"
BUILD_COMPLETE = "BUILD_COMPLETE"

LIST_ITEM_RE = re.compile(r"^(?:[-*]|\d+[.)])\s+(?P<item>.+)$")


# ==========================================================================
# Typed Results
# ==========================================================================

@dataclass
class PhaseResult:
    """Base for typed phase outputs stored on records and chain state."""

    artifact_key: ClassVar[str] = ""

    @property
    def succeeded(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        return cls(**data)


@dataclass
class DiscoveryResult(PhaseResult):
    """One discovery round: either a terminal brief or open questions."""

    artifact_key: ClassVar[str] = "discovery_round"

    complete: bool
    brief: str = ""
    questions: list[str] = field(default_factory=list)


@dataclass
class ProjectBrief(PhaseResult):
    """Structured requirements produced by the analyst."""

    artifact_key: ClassVar[str] = "brief"

    name: str
    language: str = "Rust"
    database: str = "SQLite"
    frontend: bool = False
    scope: str = "A software project."
    components: list[str] = field(default_factory=list)


@dataclass
class VerificationResult(PhaseResult):
    artifact_key: ClassVar[str] = "verification"

    passed: bool
    feedback: str = ""

    @property
    def succeeded(self) -> bool:
        return self.passed


@dataclass
class ReviewResult(PhaseResult):
    artifact_key: ClassVar[str] = "review"

    approved: bool
    feedback: str = ""

    @property
    def succeeded(self) -> bool:
        return self.approved


@dataclass
class BuildSummary(PhaseResult):
    """Final delivery report."""

    artifact_key: ClassVar[str] = "summary"

    project: str
    location: str = ""
    language: str = ""
    summary: str = ""
    usage: str = ""
    skill: Optional[str] = None


PhaseParser = Callable[[str], PhaseResult]


# ==========================================================================
# Helpers
# ==========================================================================

def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines()]


def _last_line(text: str) -> str:
    for line in reversed(_lines(text)):
        if line:
            return line
    return ""


def _get_field(lines: list[str], key: str) -> Optional[str]:
    """Value of the first `KEY: value` line, stripped."""
    prefix = f"{key}:"
    for line in lines:
        if line.startswith(prefix):
            return line[len(prefix):].strip()
    return None


def _list_after(lines: list[str], marker: str) -> list[str]:
    """Collect list items immediately following a marker line."""
    items: list[str] = []
    try:
        start = lines.index(marker) + 1
    except ValueError:
        return items
    for line in lines[start:]:
        if not line and not items:
            continue
        match = LIST_ITEM_RE.match(line)
        if not match:
            break
        items.append(match.group("item").strip())
    return items


def is_safe_project_name(name: str) -> bool:
    """Reject names that could escape the builds directory."""
    return bool(name) and not (
        "/" in name or "\\" in name or ".." in name or name.startswith(".")
    )


# ==========================================================================
# Parsers
# ==========================================================================

def parse_discovery(text: str, final: bool = False) -> DiscoveryResult:
    """
    Parse a discovery round.

    On the final round only DISCOVERY_COMPLETE is accepted, so an agent that
    keeps asking questions burns through its retry budget instead of looping.
    """
    lines = _lines(text)

    if DISCOVERY_COMPLETE in lines:
        start = lines.index(DISCOVERY_COMPLETE) + 1
        brief = "\n".join(lines[start:]).strip()
        if not brief:
            raise ParseError("DISCOVERY_COMPLETE without a brief", text)
        return DiscoveryResult(complete=True, brief=brief)

    if DISCOVERY_QUESTIONS in lines:
        if final:
            raise ParseError("final discovery round must emit DISCOVERY_COMPLETE", text)
        questions = _list_after(lines, DISCOVERY_QUESTIONS)
        if not questions:
            raise ParseError("DISCOVERY_QUESTIONS without any questions", text)
        return DiscoveryResult(complete=False, questions=questions)

    raise ParseError("no discovery marker found", text)


def parse_final_discovery(text: str) -> DiscoveryResult:
    return parse_discovery(text, final=True)


def parse_project_brief(text: str) -> ProjectBrief:
    """Parse analyst output into a ProjectBrief."""
    lines = _lines(text)

    name = _get_field(lines, "PROJECT_NAME")
    if name is None:
        raise ParseError("missing PROJECT_NAME line", text)
    if not is_safe_project_name(name):
        raise ParseError(f"invalid project name: {name!r}", text)

    defaults = ProjectBrief(name=name)
    frontend = _get_field(lines, "FRONTEND")

    return ProjectBrief(
        name=name,
        language=_get_field(lines, "LANGUAGE") or defaults.language,
        database=_get_field(lines, "DATABASE") or defaults.database,
        frontend=frontend.lower().startswith("y") if frontend else False,
        scope=_get_field(lines, "SCOPE") or defaults.scope,
        components=_list_after(lines, "COMPONENTS:"),
    )


def parse_verification_result(text: str) -> VerificationResult:
    """Parse QA output. The verdict must be the last non-empty line."""
    last = _last_line(text)

    if VERIFICATION_PASS_RE.match(last):
        return VerificationResult(passed=True)

    match = VERIFICATION_FAIL_RE.match(last)
    if match:
        return VerificationResult(passed=False, feedback=match.group("reason").strip())

    logger.debug("verification_marker_missing", last_line=last[:200])
    raise ParseError("output does not end with a VERIFICATION marker", text)


def parse_review_result(text: str) -> ReviewResult:
    """Parse reviewer output. The verdict must be the last non-empty line."""
    last = _last_line(text)

    if REVIEW_APPROVED_RE.match(last):
        return ReviewResult(approved=True)

    match = REVIEW_CHANGES_RE.match(last)
    if match:
        return ReviewResult(approved=False, feedback=match.group("feedback").strip())

    logger.debug("review_marker_missing", last_line=last[:200])
    raise ParseError("output does not end with a REVIEW marker", text)


def parse_build_summary(text: str) -> BuildSummary:
    """Parse delivery output into a BuildSummary."""
    lines = _lines(text)
    if BUILD_COMPLETE not in lines:
        raise ParseError("missing BUILD_COMPLETE marker", text)

    return BuildSummary(
        project=_get_field(lines, "PROJECT") or "",
        location=_get_field(lines, "LOCATION") or "",
        language=_get_field(lines, "LANGUAGE") or "",
        summary=_get_field(lines, "SUMMARY") or "",
        usage=_get_field(lines, "USAGE") or "",
        skill=_get_field(lines, "SKILL") or None,
    )
