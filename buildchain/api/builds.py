"""
Build Session API Routes.

Inbound channel messages go through the confirmation gate; sessions can be
listed, inspected and cancelled.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import select

from buildchain.api.deps import DbSession, Pipeline
from buildchain.core.config import settings
from buildchain.core.models import BuildSession, BuildStatus
from buildchain.core.schemas import (
    BuildSessionDetail,
    BuildSessionResponse,
    CancelResponse,
    GateReplyResponse,
    InboundMessage,
)

router = APIRouter(prefix=f"{settings.API_V1_PREFIX}/builds", tags=["builds"])


@router.post("/messages", response_model=GateReplyResponse)
async def post_message(message: InboundMessage, pipeline: Pipeline):
    """
    Route an inbound chat message through the confirmation gate.

    Returns the gate's action and the localized reply to send back, if any.
    """
    reply = await pipeline.gate.handle_message(
        requester_id=message.requester_id,
        channel=message.channel,
        text=message.text,
        locale=message.locale,
    )
    return GateReplyResponse(action=reply.action, text=reply.text, session_id=reply.session_id)


@router.get("/", response_model=list[BuildSessionResponse])
async def list_build_sessions(
    db: DbSession,
    requester_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
):
    """
    List build sessions, newest first.

    Args:
        requester_id: Only sessions of this requester
        status: Filter by status (pending_confirmation, running, failed, succeeded, cancelled)
        limit: Maximum number of results
    """
    query = select(BuildSession).order_by(BuildSession.created_at.desc()).limit(limit)

    if requester_id:
        query = query.where(BuildSession.requester_id == requester_id)

    if status_filter:
        try:
            query = query.where(BuildSession.status == BuildStatus(status_filter))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status: {status_filter}",
            )

    result = await db.execute(query)
    return [BuildSessionResponse.model_validate(s) for s in result.scalars().all()]


@router.get("/{session_id}", response_model=BuildSessionDetail)
async def get_build_session(session_id: UUID, db: DbSession):
    """Get a session with its chain state and phase history."""
    session = await db.get(BuildSession, session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Build session {session_id} not found",
        )
    return BuildSessionDetail.model_validate(session)


@router.post("/{session_id}/cancel", response_model=CancelResponse)
async def cancel_build_session(session_id: UUID, db: DbSession, pipeline: Pipeline):
    """
    Cancel a pending or running session.

    A phase already in flight finishes but its result is discarded.
    """
    session = await db.get(BuildSession, session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Build session {session_id} not found",
        )

    requester_id = session.requester_id
    was_pending = session.status == BuildStatus.PENDING_CONFIRMATION
    await db.commit()

    cancelled = await pipeline.orchestrator.cancel(session_id, "cancelled via api")
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Build session {session_id} already finished",
        )

    if was_pending:
        await pipeline.gate.markers.delete(requester_id)

    return CancelResponse(session_id=session_id, status=BuildStatus.CANCELLED)
