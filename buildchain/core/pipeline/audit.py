"""
Audit sink for phase outcomes.

Fire-and-forget: a failing sink is logged and ignored so that delivering
the pipeline's outcome never depends on recording it.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildchain.core.models import AuditEntry

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    async def append(
        self,
        session_id: UUID,
        phase: Optional[str],
        outcome: str,
        timestamp: datetime,
        detail: Optional[str] = None,
    ) -> None:
        ...


class SqlAuditSink:
    """Writes audit entries to the `audit_entries` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(
        self,
        session_id: UUID,
        phase: Optional[str],
        outcome: str,
        timestamp: datetime,
        detail: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as db:
            db.add(AuditEntry(
                session_id=session_id,
                phase=phase,
                outcome=outcome,
                detail=detail[:2000] if detail else None,
                created_at=timestamp,
            ))
            await db.commit()


async def safe_append(
    sink: Optional[AuditSink],
    session_id: UUID,
    phase: Optional[str],
    outcome: str,
    timestamp: datetime,
    detail: Optional[str] = None,
) -> None:
    """Append to the sink, swallowing any failure."""
    if sink is None:
        return
    try:
        await sink.append(session_id, phase, outcome, timestamp, detail)
    except Exception as e:
        logger.warning(f"Audit append failed for {session_id} ({phase}/{outcome}): {e}")
