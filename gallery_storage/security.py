"""
Session JWT verification for the storage routers.

End-user login lives in the gallery application; it issues an HS256 JWT
(sub = user id) in an HttpOnly cookie. This layer only reads that cookie.
create_jwt is kept for the login side and for tests.
"""
from datetime import UTC, datetime, timedelta

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from gallery_storage.config import JWT_ALGORITHM, JWT_COOKIE_MAX_AGE, JWT_COOKIE_NAME, JWT_SECRET


def create_jwt(user_id: str) -> str:
    """Build a JWT for the given user id; exp = now + JWT_COOKIE_MAX_AGE."""
    payload = {
        "sub": user_id,
        "exp": datetime.now(UTC) + timedelta(seconds=JWT_COOKIE_MAX_AGE),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt(token: str) -> dict:
    """Decode and verify JWT; raises JWTError if invalid or expired."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


def get_current_user_id(request: Request) -> str:
    """
    FastAPI dependency: user id from the session cookie.
    Raises 401 if the cookie is missing or the JWT is invalid or expired.
    """
    token = request.cookies.get(JWT_COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_jwt(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid session")
    return str(user_id)


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None
