"""
Build Chain - API Dependencies
==============================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from buildchain.core.database import get_db
from buildchain.core.pipeline.factory import BuildPipeline


def get_pipeline(request: Request) -> BuildPipeline:
    """The pipeline assembled during application startup."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Build pipeline is not initialized",
        )
    return pipeline


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
Pipeline = Annotated[BuildPipeline, Depends(get_pipeline)]
