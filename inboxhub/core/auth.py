"""
Session tokens for InboxHub.

A signed JWT carrying {user_id, email, role, name} lives in an HTTP-only
cookie. The event stream also accepts it as ``?token=`` because browser
EventSource cannot attach headers.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, Request, Response
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from inboxhub.core.config import settings
from inboxhub.core.errors import Unauthorized
from inboxhub.models.database import get_db
from inboxhub.models.entities.user import User


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Decoded payload, or None if the signature or expiry is invalid."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    if payload.get("user_id") is None:
        return None
    return payload


def token_for_user(user: User) -> str:
    return create_access_token({
        "sub": str(user.id),
        "user_id": user.id,
        "email": user.email,
        "role": user.role,
        "name": user.name,
    })


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.AUTH_COOKIE_NAME,
        value=token,
        max_age=settings.ACCESS_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        path="/",
        domain=settings.COOKIE_DOMAIN,
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.AUTH_COOKIE_NAME,
        path="/",
        domain=settings.COOKIE_DOMAIN,
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )


def _token_from_request(request: Request, allow_query: bool = False) -> Optional[str]:
    token = request.cookies.get(settings.AUTH_COOKIE_NAME)
    if not token:
        auth_header = request.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token and allow_query:
        token = request.query_params.get("token")
    return token


def get_token_payload(request: Request) -> Dict[str, Any]:
    """Dependency: valid token payload or 401."""
    token = _token_from_request(request)
    if not token:
        raise Unauthorized("Not logged in")
    payload = verify_token(token)
    if not payload:
        raise Unauthorized("Invalid or expired session")
    return payload


def get_stream_payload(request: Request) -> Dict[str, Any]:
    """Like ``get_token_payload`` but also reads ``?token=``."""
    payload = verify_token(_token_from_request(request, allow_query=True))
    if not payload:
        raise Unauthorized("Invalid or expired session")
    return payload


def get_current_user(
    payload: Dict[str, Any] = Depends(get_token_payload),
    db: Session = Depends(get_db),
) -> User:
    """Dependency: the authenticated, active user."""
    user = db.query(User).filter(User.id == payload["user_id"]).first()
    if not user or not user.is_active:
        raise Unauthorized("Invalid or expired session")
    return user


def get_optional_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    payload = verify_token(_token_from_request(request))
    if not payload:
        return None
    user = db.query(User).filter(User.id == payload["user_id"]).first()
    if user and user.is_active:
        return user
    return None
