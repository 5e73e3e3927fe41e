import logging
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from billingsync.schemas.auth import TokenData
from billingsync.core.config import settings
from billingsync.core.exceptions import ForbiddenError, ValidationError

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> TokenData:
    """Verify JWT token and return user data"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.warning(f"⚠️ JWT decode failed: {e}")
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception

    return TokenData(
        user_id=user_id,
        email=payload.get("email"),
        role=payload.get("role") or "user",
    )


async def get_current_user(token_data: TokenData = Depends(verify_token)) -> TokenData:
    """Get current authenticated user"""
    return token_data


async def require_admin(current_user: TokenData = Depends(get_current_user)) -> TokenData:
    """Operator-only endpoints"""
    if not current_user.is_admin:
        raise ForbiddenError("Admin access required")
    return current_user


def user_uuid(current_user: TokenData) -> UUID:
    try:
        return UUID(current_user.user_id)
    except (TypeError, ValueError):
        raise ValidationError("Invalid user id in token")


def create_access_token(user_id: str, email: str = None, role: str = "user") -> str:
    """Issue a bearer token for a user or operator (used by ops scripts and tests)"""
    return jwt.encode(
        {"sub": user_id, "email": email, "role": role},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
