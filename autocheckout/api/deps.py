"""
FastAPI dependencies for dependency injection.

Provides the shared engine instance, the caller's user id, and
authentication dependencies for route handlers.
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from autocheckout.application.engine import AutoCheckoutEngine
from autocheckout.core.security import check_rate_limit, verify_api_key


def get_checkout_engine(request: Request) -> AutoCheckoutEngine:
    """
    Dependency to get the auto-checkout engine.

    The engine is created once in the application lifespan.

    Raises:
        HTTPException: If the engine has not been started.
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Auto-checkout engine not available",
        )
    return engine


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> str:
    """
    Identity of the caller, set by the upstream authentication layer.

    Raises:
        HTTPException: If the header is missing or blank.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Valid user ID is required",
        )
    return x_user_id.strip()


# Type aliases for cleaner route signatures
Engine = Annotated[AutoCheckoutEngine, Depends(get_checkout_engine)]
CurrentUserId = Annotated[str, Depends(get_current_user_id)]
ApiKeyAuth = Annotated[None, Depends(verify_api_key)]
RateLimited = Annotated[None, Depends(check_rate_limit)]
