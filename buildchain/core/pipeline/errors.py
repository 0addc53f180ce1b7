"""
Build pipeline error taxonomy.

Transient errors (AgentTransportError, ParseError) are absorbed inside the
phase executor's retry budget. The rest end a session or are no-ops.
"""

from typing import Optional
from uuid import UUID

from buildchain.core.models import BuildPhase


class BuildPipelineError(Exception):
    """Base class for build pipeline errors."""


class AgentTransportError(BuildPipelineError):
    """The agent execution service could not be reached or answered badly."""


class ParseError(BuildPipelineError):
    """A required output marker is absent or malformed."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class PhaseExecutionError(BuildPipelineError):
    """A phase failed on every attempt of its retry budget."""

    def __init__(self, agent_name: str, attempts: int, last_error: Optional[Exception] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"phase '{agent_name}' failed after {attempts} attempts{detail}")
        self.agent_name = agent_name
        self.attempts = attempts
        self.last_error = last_error


class ResourceAcquisitionError(BuildPipelineError):
    """An agent definition could not be materialized. Not retried."""


class RetryBudgetExhausted(BuildPipelineError):
    """A feedback loop hit its iteration cap with a still-failing result."""

    def __init__(self, phase: str, attempts: int, feedback: str):
        super().__init__(f"{phase} loop exhausted after {attempts} attempts: {feedback}")
        self.phase = phase
        self.attempts = attempts
        self.feedback = feedback


class CancelledByUser(BuildPipelineError):
    """The session was cancelled; any late phase result is discarded."""

    def __init__(self, session_id: UUID):
        super().__init__(f"build session {session_id} was cancelled")
        self.session_id = session_id


class ConfirmationExpired(BuildPipelineError):
    """The pending confirmation marker outlived its TTL."""

    def __init__(self, requester_id: str, session_id: UUID):
        super().__init__(f"confirmation for {requester_id} expired")
        self.requester_id = requester_id
        self.session_id = session_id


class ConcurrentSessionConflict(BuildPipelineError):
    """A build is already awaiting confirmation for this requester."""

    def __init__(self, requester_id: str, session_id: UUID):
        super().__init__(f"requester {requester_id} already has pending build {session_id}")
        self.requester_id = requester_id
        self.session_id = session_id


class PhaseValidationError(BuildPipelineError):
    """A file a phase needs, or was meant to produce, is not in the project directory."""

    def __init__(self, phase: BuildPhase, message_key: str, path: str = ""):
        detail = f" ({path})" if path else ""
        super().__init__(f"{phase.value} file check failed: {message_key}{detail}")
        self.phase = phase
        self.message_key = message_key
        self.path = path
