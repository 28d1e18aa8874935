"""Authentication utilities"""
from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from api.config import settings
from api.dependencies import get_db
from api.schemas.auth import TokenData
from pledgehub.db.repositories import UserRepository

# Security
security = HTTPBearer()


def _credentials_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token. ``sub`` carries the user id."""
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> TokenData:
    """Decode and verify JWT token"""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise _credentials_error()

    user_id = payload.get("sub")
    if user_id is None:
        raise _credentials_error()

    return TokenData(
        user_id=str(user_id),
        email=payload.get("email"),
        role=str(payload.get("role", "user")),
    )


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> TokenData:
    """Get current user from JWT token"""
    token = credentials.credentials
    return decode_access_token(token)


async def get_current_user_id(
    request: Request,
    current_user: TokenData = Depends(get_current_user)
) -> str:
    """
    Get current user ID and expose it on request state.

    SlowAPI's key function reads ``request.state.user_id`` so write limits
    apply per user rather than per address.
    """
    if not current_user.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User ID not found in token"
        )

    request.state.user_id = current_user.user_id
    return current_user.user_id


async def require_admin(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> str:
    """
    Dependency to require admin user.

    The role claim in the token is not trusted; the stored role decides.
    Raises 403 if user is not an admin.
    """
    user = UserRepository(db).get_by_id(user_id)
    if not user or user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required"
        )
    return user_id
