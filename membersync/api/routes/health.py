"""
Health check endpoint (no authentication).
"""

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from membersync.api.dependencies import get_components
from membersync.app_state import Components

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(components: Components = Depends(get_components)):
    """Liveness plus a database round-trip."""
    try:
        with components.database.session_scope() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.error("Health check database query failed", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unreachable"},
        )
    return {"status": "ok", "database": "ok"}
