"""
Request-scoped FastAPI dependencies: DB session, caller identity, runtime settings.
"""

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.settings_store import RuntimeSettings, load_runtime_settings
from .auth import AuthenticatedUser, get_current_user
from .config import get_settings
from .database import get_db as _get_db


async def get_db() -> AsyncSession:
    """One session per request, committed when the handler returns."""
    async for session in _get_db():
        yield session


async def get_user(
    authorization: str = Header(default=""),
) -> AuthenticatedUser:
    """Bearer token → user. With FF_USE_AUTH off every caller is the dev admin."""
    try:
        return await get_current_user(authorization)
    except PermissionError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin(
    user: AuthenticatedUser = Depends(get_user),
) -> AuthenticatedUser:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{get_settings().auth_admin_role}' required",
        )
    return user


async def get_runtime_settings(db: AsyncSession = Depends(get_db)) -> RuntimeSettings:
    """The three admin-editable structs, read once for this request."""
    return await load_runtime_settings(db)
