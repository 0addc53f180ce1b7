"""
Build Chain - Database Models
=============================

SQLAlchemy models for build sessions, their phase history and the
supporting stores (pending confirmations, audit trail).
"""

import enum
from datetime import datetime
from typing import Optional
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildchain.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class BuildStatus(str, enum.Enum):
    """Lifecycle status of a build session."""
    PENDING_CONFIRMATION = "pending_confirmation"
    RUNNING = "running"
    FAILED = "failed"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildStatus.FAILED, BuildStatus.SUCCEEDED, BuildStatus.CANCELLED)


class BuildPhase(str, enum.Enum):
    """Pipeline phases, in execution order."""
    DISCOVERY = "discovery"
    ANALYST = "analyst"
    ARCHITECT = "architect"
    TEST_WRITER = "test-writer"
    DEVELOPER = "developer"
    QA = "qa"                 # Verification
    REVIEWER = "reviewer"
    DELIVERY = "delivery"


class PhaseOutcome(str, enum.Enum):
    """Outcome of a single phase attempt."""
    SUCCESS = "success"   # Completed with a positive result
    FAILURE = "failure"   # Agent reported failure (verification/review)
    ERROR = "error"       # Execution budget exhausted or resource error


class ModelTier(str, enum.Enum):
    """Which model class serves a phase."""
    FAST = "fast"
    COMPLEX = "complex"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class BuildSession(Base, TimestampMixin):
    """
    One end-to-end pipeline run triggered by a confirmed user request.

    Terminal sessions are retained for audit; rows are never deleted.
    """

    __tablename__ = "build_sessions"

    id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    requester_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    channel: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )  # telegram, whatsapp, api
    locale: Mapped[str] = mapped_column(
        String(10),
        default="en",
        nullable=False,
    )
    request_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # Pipeline state
    current_phase: Mapped[Optional[BuildPhase]] = mapped_column(
        Enum(BuildPhase),
        nullable=True,
    )
    status: Mapped[BuildStatus] = mapped_column(
        Enum(BuildStatus),
        default=BuildStatus.PENDING_CONFIRMATION,
        nullable=False,
        index=True,
    )

    # Results
    result_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    phase_records: Mapped[list["PhaseRecord"]] = relationship(
        back_populates="session",
        lazy="selectin",
        order_by="PhaseRecord.sequence",
    )
    chain_state: Mapped[Optional["ChainStateRecord"]] = relationship(
        back_populates="session",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<BuildSession {self.id} [{self.status.value}]>"


class PhaseRecord(Base):
    """
    Immutable record of one attempt at one pipeline phase.

    Append-only: rows are inserted by the chain state store and never updated.
    """

    __tablename__ = "phase_records"

    id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("build_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )  # Position in the session history
    phase: Mapped[BuildPhase] = mapped_column(
        Enum(BuildPhase),
        nullable=False,
    )
    attempt: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    agent_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    raw_output: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    parsed_result: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    outcome: Mapped[PhaseOutcome] = mapped_column(
        Enum(PhaseOutcome),
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Relationships
    session: Mapped["BuildSession"] = relationship(
        back_populates="phase_records",
    )

    def __repr__(self) -> str:
        return f"<PhaseRecord {self.phase.value}#{self.attempt} [{self.outcome.value}]>"


class ChainStateRecord(Base):
    """
    Durable per-session snapshot used to resume after a restart.

    `phase` is the last phase whose attempt was recorded with a parsed result.
    """

    __tablename__ = "chain_states"

    session_id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("build_sessions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    phase: Mapped[Optional[BuildPhase]] = mapped_column(
        Enum(BuildPhase),
        nullable=True,
    )
    qa_attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    review_attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    artifacts: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )  # {brief, verification, review, summary, discovery, ...}
    status: Mapped[BuildStatus] = mapped_column(
        Enum(BuildStatus),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Relationships
    session: Mapped["BuildSession"] = relationship(
        back_populates="chain_state",
    )

    def __repr__(self) -> str:
        phase = self.phase.value if self.phase else "-"
        return f"<ChainStateRecord {self.session_id} [{phase}]>"


class PendingConfirmation(Base):
    """Time-bounded marker for a build awaiting the requester's confirmation."""

    __tablename__ = "pending_confirmations"

    requester_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    session_id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("build_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PendingConfirmation {self.requester_id} -> {self.session_id}>"


class AuditEntry(Base):
    """Phase outcome audit trail."""

    __tablename__ = "audit_entries"

    id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    phase: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    outcome: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    detail: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
