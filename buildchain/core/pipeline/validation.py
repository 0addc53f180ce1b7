"""
Phase File Checks - what must exist in the project directory around a phase.

Each phase may declare files it needs before it starts and files it must
leave behind. A check that fails stops the build with a localized message
instead of handing the next agent an empty project.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from buildchain.core.models import BuildPhase
from buildchain.core.pipeline.errors import PhaseValidationError

SOURCE_SUFFIXES = (".rs", ".py", ".js", ".ts", ".go", ".java", ".rb", ".c", ".cpp")
TEST_NAME_MARKERS = ("test", "spec", "_test.")


@dataclass(frozen=True)
class FileCheck:
    """
    Files a phase needs in the project directory.

    `paths` must each exist. When `name_markers` or `suffixes` are set, at
    least one file anywhere in the project must contain a marker in its name
    or end with one of the suffixes.
    """
    message_key: str
    paths: tuple[str, ...] = ()
    name_markers: tuple[str, ...] = ()
    suffixes: tuple[str, ...] = ()


def resolve_in_project(project_dir: Path, relative: str, phase: BuildPhase) -> Path:
    """Join a declared path onto the project dir, refusing anything that could leave it."""
    if ".." in relative or relative.startswith("/") or "\\" in relative:
        raise PhaseValidationError(phase, "validation.invalid_path", relative)
    return project_dir / relative


def _project_file_names(project_dir: Path):
    for root, dirs, files in os.walk(project_dir):
        # .git, .venv and friends
        dirs[:] = [d for d in dirs if not d.startswith(".")]
        yield from files


def has_matching_file(project_dir: Path, check: FileCheck) -> bool:
    for filename in _project_file_names(project_dir):
        name = filename.lower()
        if any(marker in name for marker in check.name_markers):
            return True
        if any(name.endswith(suffix) for suffix in check.suffixes):
            return True
    return False


def check_files(project_dir: Path, check: FileCheck, phase: BuildPhase) -> None:
    """
    Raises:
        PhaseValidationError: A required file is missing or a path is unsafe
    """
    for relative in check.paths:
        if not resolve_in_project(project_dir, relative, phase).is_file():
            raise PhaseValidationError(phase, check.message_key, relative)

    if (check.name_markers or check.suffixes) and not has_matching_file(project_dir, check):
        raise PhaseValidationError(phase, check.message_key)
