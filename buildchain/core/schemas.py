"""
Build Chain - Pydantic Schemas
==============================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from buildchain.core.models import BuildPhase, BuildStatus, PhaseOutcome
from buildchain.core.pipeline.confirmation import GateAction


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Inbound Messages
# ==========================================================================

class InboundMessage(BaseSchema):
    """A chat message forwarded by a channel adapter."""

    requester_id: str = Field(min_length=1, max_length=255)
    channel: str = Field(default="api", min_length=1, max_length=50)
    text: str = Field(min_length=1)
    locale: str = Field(default="en", min_length=2, max_length=10)


class GateReplyResponse(BaseSchema):
    """What the confirmation gate did with a message."""

    action: GateAction
    text: Optional[str] = None
    session_id: Optional[UUID] = None


# ==========================================================================
# Build Sessions
# ==========================================================================

class PhaseRecordResponse(BaseSchema):
    """One recorded phase attempt."""

    sequence: int
    phase: BuildPhase
    attempt: int
    agent_name: str
    outcome: PhaseOutcome
    parsed_result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: datetime


class ChainStateResponse(BaseSchema):
    """Persisted chain state snapshot."""

    phase: Optional[BuildPhase] = None
    qa_attempts: int
    review_attempts: int
    artifacts: dict[str, Any]
    status: BuildStatus
    updated_at: datetime


class BuildSessionResponse(TimestampSchema):
    """Build session summary."""

    id: UUID
    requester_id: str
    channel: str
    locale: str
    request_text: str
    current_phase: Optional[BuildPhase] = None
    status: BuildStatus
    result_message: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None


class BuildSessionDetail(BuildSessionResponse):
    """Build session with its chain state and phase history."""

    chain_state: Optional[ChainStateResponse] = None
    phase_records: list[PhaseRecordResponse] = []


class CancelResponse(BaseSchema):
    session_id: UUID
    status: BuildStatus


# ==========================================================================
# System
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    active_builds: int = 0
