import uuid
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from .config import ACCESS_TOKEN_TTL_MINUTES, JWT_ALGORITHM, JWT_SECRET
from .database import get_db
from .models import User

ACCESS_COOKIE = "access_token"
CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "x-csrf-token"


def create_access_token(user_id: uuid.UUID, ttl: timedelta | None = None) -> str:
    """Mint a token in the account service's format (used by tests and local tooling)."""
    expires = datetime.now(timezone.utc) + (ttl or timedelta(minutes=ACCESS_TOKEN_TTL_MINUTES))
    return jwt.encode({"sub": str(user_id), "exp": expires}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _token_user_id(token: str) -> uuid.UUID:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    try:
        return uuid.UUID(str(payload.get("sub") or ""))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = await db.get(User, _token_user_id(token))
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")
    return user


def verify_csrf(request: Request) -> None:
    """Double-submit check: the CSRF cookie must be echoed back in a header."""
    cookie = request.cookies.get(CSRF_COOKIE)
    if not cookie or cookie != request.headers.get(CSRF_HEADER):
        raise HTTPException(status_code=403, detail="CSRF token mismatch")
