"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from quizecon.auth.jwt import verify_token
from quizecon.database import get_session
from quizecon.db.models import User
from quizecon.users.service import get_or_create_user

_bearer = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> User:
    """
    Verify the bearer token and resolve its principal to a User.

    First-time principals are provisioned on the spot. Raises 401 on failure.
    """
    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    user, created = await get_or_create_user(
        db,
        str(payload["sub"]),
        display_name=payload.get("name"),
        email=payload.get("email"),
    )
    if created:
        await db.commit()
    return user
