from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from uuid import UUID
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from appcore.core.db import get_db
from appcore.core.security import decode_access_token
from appcore.services.application_service import (
    ApplicationService,
    TrustedApplicationService,
)
from appcore.services.permission_evaluator import ANONYMOUS, Principal
import structlog

logger = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Principal:
    """Bearer token subject, or the anonymous principal when no token is sent."""
    if credentials is None:
        return ANONYMOUS

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_access_token(credentials.credentials)
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        return Principal(user_id=UUID(str(user_id)))
    except (JWTError, ValueError):
        logger.warning("Authentication failed: invalid bearer token")
        raise credentials_exception


async def get_application_service(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> ApplicationService:
    return ApplicationService(db, principal)


async def get_trusted_application_service(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> TrustedApplicationService:
    # Only for bookkeeping after a permission-checked call in the same request
    return TrustedApplicationService(db, principal)
