"""
Request dependencies for API routes.
"""

from fastapi import HTTPException, Request, status

from membersync.app_state import Components


def get_components(request: Request) -> Components:
    """Components built at startup and stored on app.state."""
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return components
