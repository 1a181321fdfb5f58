"""
Authentication endpoints: login, register, token refresh, current user.

Users live in platform_users with bcrypt-hashed passwords. Tokens carry the
user id, which is the uid flaggings are recorded against, and the role that
decides who may administer flags.

Registration needs an admin token, except for the very first user, who
bootstraps as admin. The bootstrap check and the insert run in one
transaction under an advisory lock.
"""
import logging
import time
from typing import Optional

import bcrypt
from fastapi import APIRouter, Depends, HTTPException, Request
from psycopg2.errors import UniqueViolation
from pydantic import BaseModel, Field

from ..config import JWT_SECRET
from ..dependencies import get_storage
from ..helpers import client_ip
from ..middleware.auth import encode_token

router = APIRouter()
log = logging.getLogger("flag_api.auth")

# Login attempts per client IP
_login_attempts: dict[str, list[float]] = {}
_LOGIN_WINDOW = 300  # 5 minutes
_LOGIN_MAX = 10


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=100, pattern=r'^[a-zA-Z0-9_-]+$')
    password: str = Field(..., min_length=8)
    # Any role name; permissions are granted per role through /api/flag-permissions.
    role: str = Field(default="read", pattern=r'^[a-z][a-z0-9_]*$')


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    role: str


class UserInfo(BaseModel):
    uid: int
    username: str
    role: str


def _require_configured():
    if not JWT_SECRET:
        raise HTTPException(400, "Authentication is not configured")
    if len(JWT_SECRET) < 32:
        raise HTTPException(500, "JWT secret must be at least 32 characters")


def _token_response(uid: int, username: str, role: str) -> TokenResponse:
    token, expires_in = encode_token(username, uid, role)
    return TokenResponse(access_token=token, expires_in=expires_in, role=role)


def _acting_user(request: Request) -> Optional[UserInfo]:
    """The token's user as set by AuthMiddleware, or None for anonymous callers."""
    username = getattr(request.state, "user", None)
    if not username or username == "anonymous":
        return None
    return UserInfo(
        uid=getattr(request.state, "uid", 0),
        username=username,
        role=getattr(request.state, "role", None) or "read",
    )


def _count_login_attempt(request: Request):
    now = time.time()
    ip = client_ip(request)
    attempts = [t for t in _login_attempts.get(ip, []) if t > now - _LOGIN_WINDOW]
    if len(attempts) >= _LOGIN_MAX:
        _login_attempts[ip] = attempts
        log.warning("Login rate limit hit for %s", ip)
        raise HTTPException(429, "Too many login attempts. Try again later.")
    attempts.append(now)
    _login_attempts[ip] = attempts


@router.post("/api/auth/login", response_model=TokenResponse)
def login(body: LoginRequest, request: Request, storage=Depends(get_storage)):
    _require_configured()
    _count_login_attempt(request)

    row = storage.load_user_by_name(body.username)
    if not row or not bcrypt.checkpw(body.password.encode("utf-8"), row["password_hash"].encode("utf-8")):
        raise HTTPException(401, "Invalid credentials")
    return _token_response(row["id"], row["username"], row["role"])


@router.post("/api/auth/register", response_model=UserInfo)
def register(body: RegisterRequest, request: Request, storage=Depends(get_storage)):
    _require_configured()
    password_hash = bcrypt.hashpw(body.password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    with storage.transaction():
        storage.lock_user_bootstrap()
        bootstrap = storage.count_users() == 0
        if not bootstrap:
            current = _acting_user(request)
            if current is None or current.role != "admin":
                raise HTTPException(403, "Only admins can register new users")
        try:
            uid = storage.insert_user(body.username, password_hash, body.role)
        except UniqueViolation:
            raise HTTPException(409, "Username already exists")

    log.info("Registered user %s (uid=%s, role=%s, bootstrap=%s)", body.username, uid, body.role, bootstrap)
    return UserInfo(uid=uid, username=body.username, role=body.role)


@router.post("/api/auth/refresh", response_model=TokenResponse)
def refresh_token(request: Request):
    _require_configured()
    current = _acting_user(request)
    if current is None:
        raise HTTPException(401, "Authentication required")
    return _token_response(current.uid, current.username, current.role)


@router.get("/api/auth/me", response_model=UserInfo)
def current_user(request: Request):
    if not JWT_SECRET:
        raise HTTPException(400, "Authentication is not configured")
    current = _acting_user(request)
    if current is None:
        raise HTTPException(401, "Authentication required")
    return current
