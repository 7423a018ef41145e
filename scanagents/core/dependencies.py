"""FastAPI dependencies for dependency injection"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from ..db.database import get_db
from ..db.repositories.agent import AgentRepository
from ..services.agent_lifecycle import AgentLifecycleManager

logger = logging.getLogger(__name__)

# Tokens are issued by the identity provider; this service only verifies them
oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="/api/v1/auth/login",
    auto_error=False,  # Don't auto-raise, let us handle it
)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_authenticated_user(
    token: Annotated[Optional[str], Depends(oauth2_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str:
    """
    Verify the bearer token and return its subject as the owner id.

    Raises:
        HTTPException 401: If token is missing, invalid or has no subject
    """
    if not token:
        raise _unauthorized("Not authenticated")

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except JWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        raise _unauthorized("Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise _unauthorized("Token has no subject")
    return str(subject)


async def get_lifecycle_manager(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> AgentLifecycleManager:
    """Lifecycle manager bound to the request's session"""
    return AgentLifecycleManager(AgentRepository(db))


# Type aliases for cleaner dependency injection
CurrentOwnerDep = Annotated[str, Depends(require_authenticated_user)]
LifecycleDep = Annotated[AgentLifecycleManager, Depends(get_lifecycle_manager)]
