from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request, HTTPException, Depends
from itsdangerous import URLSafeSerializer, BadData
from sqlalchemy.orm import Session

from . import models
from .db import get_session
from .settings import settings

COOKIE_NAME = "race_auth"

def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(settings.RACE_SECRET_KEY, salt="race-results-auth")

@dataclass
class CurrentUser:
    id: int
    email: str
    name: str
    role: str  # "Runner" | "Marshal" | "Admin"
    verification_status: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == models.ADMIN

    @property
    def is_marshal(self) -> bool:
        return self.role == models.MARSHAL

    @property
    def can_record_results(self) -> bool:
        return self.is_admin or (self.is_marshal and self.verification_status == models.APPROVED)

def set_login_cookie(request: Request, *, user_id: int) -> None:
    request.state._set_auth_cookie = _serializer().dumps({"id": user_id})

def clear_login_cookie(request: Request) -> None:
    request.state._clear_auth_cookie = True

def get_current_user(request: Request, session: Session = Depends(get_session)) -> Optional[CurrentUser]:
    raw = request.cookies.get(COOKIE_NAME)
    if not raw:
        return None
    try:
        data = _serializer().loads(raw)
        user_id = int(data["id"])
    except (BadData, KeyError, TypeError, ValueError):
        return None
    # role and verification are read fresh so revocations apply immediately
    u = session.get(models.User, user_id)
    if not u or not u.is_active:
        return None
    return CurrentUser(
        id=u.id,
        email=u.email,
        name=u.name,
        role=u.role,
        verification_status=u.verification_status,
    )

def login_required(user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user

def runner_required(user: CurrentUser = Depends(login_required)) -> CurrentUser:
    if user.role != models.RUNNER:
        raise HTTPException(status_code=403, detail="Only runners can register for events")
    return user

def marshal_required(user: CurrentUser = Depends(login_required)) -> CurrentUser:
    if user.is_admin:
        return user
    if not user.is_marshal:
        raise HTTPException(status_code=403, detail="Only marshals and admins can access this endpoint")
    if user.verification_status != models.APPROVED:
        raise HTTPException(status_code=403, detail="Marshal account is not verified yet")
    return user

def admin_required(user: CurrentUser = Depends(login_required)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin required")
    return user

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

class AuthCookieMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        token = getattr(request.state, "_set_auth_cookie", None)
        if token:
            response.set_cookie(
                COOKIE_NAME,
                token,
                httponly=True,
                samesite="lax",
                secure=settings.RACE_COOKIE_SECURE,
                max_age=60 * 60 * 12,
            )
        if getattr(request.state, "_clear_auth_cookie", False):
            response.delete_cookie(COOKIE_NAME)
        return response
