"""
Admin auth for the diagnostics endpoints.

Tokens are HS256 JWTs issued by the main application's login flow with a
"user_id" claim. Only accounts with access_level == "admin" pass.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.models.user_account import UserAccount

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer()


def _jwt_secret() -> str:
    from src.config import get_settings
    settings = get_settings()
    return settings.dashboard_jwt_secret or settings.app_secret_key


def create_admin_token(user_id: uuid.UUID | str) -> str:
    """Issue a token for a user (scripts and tests; the login flow lives elsewhere)."""
    import jwt
    from src.config import get_settings
    settings = get_settings()

    return jwt.encode(
        {
            "user_id": str(user_id),
            "exp": datetime.now(timezone.utc) + timedelta(hours=settings.dashboard_jwt_expiry_hours),
        },
        _jwt_secret(),
        algorithm="HS256",
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> UserAccount:
    """Dependency to extract and verify the user from a JWT Bearer token."""
    import jwt as pyjwt

    try:
        payload = pyjwt.decode(
            credentials.credentials,
            _jwt_secret(),
            algorithms=["HS256"],
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        user_uuid = uuid.UUID(payload.get("user_id"))
    except (ValueError, AttributeError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = await db.get(UserAccount, user_uuid)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def get_current_admin(
    user: UserAccount = Depends(get_current_user),
) -> UserAccount:
    """Dependency that requires the authenticated user to be an admin."""
    if user.access_level != "admin":
        logger.warning("Non-admin diagnostics access attempt: %s", user.id)
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
