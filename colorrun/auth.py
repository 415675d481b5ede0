from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request, Depends
from itsdangerous import URLSafeSerializer, BadSignature
from sqlalchemy.orm import Session

from .db import get_session
from .errors import AuthFailed
from .settings import settings
from . import models, services

ADMIN_COOKIE = "admin_session"
USER_COOKIE = "auth-token"
COOKIE_MAX_AGE = 60 * 60 * 24 * 7

def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(settings.COLORRUN_SECRET_KEY, salt="colorrun-auth")

@dataclass
class CurrentUser:
    id: int
    name: str
    role: str  # "admin" | "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

def _pending(request: Request) -> dict:
    if not hasattr(request.state, "_set_cookies"):
        request.state._set_cookies = {}
    return request.state._set_cookies

def set_login_cookie(request: Request, cookie: str, *, user_id: int, name: str, role: str) -> None:
    _pending(request)[cookie] = _serializer().dumps({"id": user_id, "n": name, "r": role})

def clear_login_cookies(request: Request) -> None:
    request.state._clear_cookies = True

def _read_cookie(request: Request, cookie: str) -> Optional[CurrentUser]:
    raw = request.cookies.get(cookie)
    if not raw:
        return None
    try:
        data = _serializer().loads(raw)
        return CurrentUser(id=int(data["id"]), name=str(data.get("n") or ""), role=str(data.get("r") or ""))
    except (BadSignature, KeyError, TypeError, ValueError):
        return None

def _bearer_admin(request: Request, session: Session) -> Optional[CurrentUser]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    user = services.get_user_by_access_code(session, header[len("Bearer "):])
    if user and user.role == "admin":
        return CurrentUser(id=user.id, name=user.name, role=user.role)
    return None

def current_admin_optional(request: Request, session: Session = Depends(get_session)) -> Optional[CurrentUser]:
    user = _read_cookie(request, ADMIN_COOKIE)
    if user and user.is_admin:
        return user
    user = _read_cookie(request, USER_COOKIE)
    if user and user.is_admin:
        return user
    return _bearer_admin(request, session)

def admin_required(user: Optional[CurrentUser] = Depends(current_admin_optional)) -> CurrentUser:
    if not user:
        raise AuthFailed("Unauthorized")
    return user

def current_user_required(request: Request, session: Session = Depends(get_session)) -> models.User:
    current = _read_cookie(request, USER_COOKIE) or _read_cookie(request, ADMIN_COOKIE)
    if not current:
        raise AuthFailed("Not authenticated")
    user = session.get(models.User, current.id)
    if not user:
        raise AuthFailed("Not authenticated")
    return user

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

class AuthCookieMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        if getattr(request.state, "_clear_cookies", False):
            response.delete_cookie(ADMIN_COOKIE)
            response.delete_cookie(USER_COOKIE)
        for cookie, token in getattr(request.state, "_set_cookies", {}).items():
            response.set_cookie(
                cookie,
                token,
                httponly=True,
                samesite="lax",
                secure=False,  # set True behind HTTPS
                max_age=COOKIE_MAX_AGE,
            )
        return response
