"""
Chain State Store - durable, resumable per-session progress.

Every phase transition is written in a single transaction: the new phase
record, the chain state snapshot, and the session's phase/status mirror.
A process restart therefore resumes from the last committed record.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildchain.core.models import (
    BuildPhase,
    BuildSession,
    BuildStatus,
    ChainStateRecord,
    PhaseOutcome,
    PhaseRecord,
)
from buildchain.core.pipeline.errors import CancelledByUser
from buildchain.core.pipeline.output_parser import (
    BuildSummary,
    PhaseResult,
    ProjectBrief,
    ReviewResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==========================================================================
# Domain Objects
# ==========================================================================

@dataclass(frozen=True)
class PhaseAttempt:
    """One attempt at one phase. Immutable once created."""
    session_id: UUID
    phase: BuildPhase
    attempt: int
    agent_name: str
    outcome: PhaseOutcome
    started_at: datetime
    completed_at: datetime
    raw_output: Optional[str] = None
    parsed_result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, record: PhaseRecord) -> "PhaseAttempt":
        return cls(
            session_id=record.session_id,
            phase=record.phase,
            attempt=record.attempt,
            agent_name=record.agent_name,
            outcome=record.outcome,
            started_at=as_utc(record.started_at),
            completed_at=as_utc(record.completed_at),
            raw_output=record.raw_output,
            parsed_result=record.parsed_result,
            error_message=record.error_message,
        )


@dataclass
class ChainState:
    """
    Snapshot of a session's progress.

    `phase` is the last phase recorded with a parsed result; the sequencer
    and loop controller derive the next step from it and the artifacts.
    """
    session_id: UUID
    phase: Optional[BuildPhase] = None
    status: BuildStatus = BuildStatus.RUNNING
    qa_attempts: int = 0
    review_attempts: int = 0
    artifacts: dict[str, Any] = field(default_factory=dict)
    history: list[PhaseAttempt] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    def attempts_for(self, phase: BuildPhase) -> int:
        return sum(1 for record in self.history if record.phase == phase)

    def store_result(self, result: PhaseResult) -> None:
        self.artifacts[result.artifact_key] = result.to_dict()

    def _artifact(self, key: str, kind: type):
        data = self.artifacts.get(key)
        return kind.from_dict(data) if data else None

    @property
    def brief(self) -> Optional[ProjectBrief]:
        return self._artifact("brief", ProjectBrief)

    @property
    def verification(self) -> Optional[VerificationResult]:
        return self._artifact("verification", VerificationResult)

    @property
    def review(self) -> Optional[ReviewResult]:
        return self._artifact("review", ReviewResult)

    @property
    def summary(self) -> Optional[BuildSummary]:
        return self._artifact("summary", BuildSummary)

    @property
    def discovery(self) -> dict[str, Any]:
        return self.artifacts.get("discovery") or {"rounds": [], "complete": False}


# ==========================================================================
# Store
# ==========================================================================

class ChainStateStore:
    """Persists ChainState snapshots and phase records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(
        self,
        session_id: UUID,
        state: ChainState,
        record: Optional[PhaseAttempt] = None,
        message: Optional[str] = None,
    ) -> None:
        """
        Write the snapshot (and the record that produced it) atomically.

        Raises:
            CancelledByUser: The session was cancelled in storage; nothing is written
            LookupError: The session does not exist
        """
        now = utcnow()

        async with self.session_factory() as db:
            async with db.begin():
                session = await db.get(BuildSession, session_id)
                if session is None:
                    raise LookupError(f"build session {session_id} not found")

                if session.status == BuildStatus.CANCELLED and state.status != BuildStatus.CANCELLED:
                    raise CancelledByUser(session_id)

                if record is not None:
                    db.add(PhaseRecord(
                        session_id=session_id,
                        sequence=len(state.history),
                        phase=record.phase,
                        attempt=record.attempt,
                        agent_name=record.agent_name,
                        raw_output=record.raw_output,
                        parsed_result=record.parsed_result,
                        outcome=record.outcome,
                        error_message=record.error_message,
                        started_at=record.started_at,
                        completed_at=record.completed_at,
                    ))

                row = await db.get(ChainStateRecord, session_id)
                if row is None:
                    row = ChainStateRecord(session_id=session_id)
                    db.add(row)

                row.phase = state.phase
                row.qa_attempts = state.qa_attempts
                row.review_attempts = state.review_attempts
                row.artifacts = dict(state.artifacts)
                row.status = state.status
                row.updated_at = now

                session.current_phase = state.phase
                session.status = state.status
                if state.status.is_terminal:
                    session.completed_at = now
                    if state.status == BuildStatus.FAILED:
                        session.error_message = message
                    if message is not None:
                        session.result_message = message

        state.updated_at = now

    async def load(self, session_id: UUID) -> Optional[ChainState]:
        """Load a session's snapshot; None means nothing was ever persisted."""
        async with self.session_factory() as db:
            row = await db.get(ChainStateRecord, session_id)
            if row is None:
                return None

            result = await db.execute(
                select(PhaseRecord)
                .where(PhaseRecord.session_id == session_id)
                .order_by(PhaseRecord.sequence)
            )
            history = [PhaseAttempt.from_record(r) for r in result.scalars().all()]

            return ChainState(
                session_id=session_id,
                phase=row.phase,
                status=row.status,
                qa_attempts=row.qa_attempts,
                review_attempts=row.review_attempts,
                artifacts=dict(row.artifacts or {}),
                history=history,
                updated_at=as_utc(row.updated_at),
            )

    async def mark_cancelled(self, session_id: UUID, reason: Optional[str] = None) -> bool:
        """
        Persist a cancellation. Returns False if the session was already terminal.

        Written before any in-flight phase finishes, so a late result can
        never overwrite it.
        """
        now = utcnow()
        async with self.session_factory() as db:
            async with db.begin():
                session = await db.get(BuildSession, session_id)
                if session is None:
                    raise LookupError(f"build session {session_id} not found")
                if session.status.is_terminal:
                    return False

                session.status = BuildStatus.CANCELLED
                session.completed_at = now
                if reason:
                    session.result_message = reason

                await db.execute(
                    update(ChainStateRecord)
                    .where(ChainStateRecord.session_id == session_id)
                    .values(status=BuildStatus.CANCELLED, updated_at=now)
                )

        logger.info(f"Cancelled build session {session_id}")
        return True
