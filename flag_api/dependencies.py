"""
Shared FastAPI dependencies for authentication, storage and the flag service.

Usage in routers:
    from ..dependencies import require_admin, get_flag_service

    @router.get("/api/flaggings/{flag_name}/{entity_id}")
    def status(flag_name: str, entity_id: int, service=Depends(get_flag_service)):
        ...

    @router.post("/api/flags")
    def create(body: FlagCreate, user=Depends(require_admin)):
        ...
"""
from fastapi import Depends, HTTPException, Request

from .accounts import ANONYMOUS, Account, dev_account, user_account
from .config import JWT_SECRET, SESSION_COOKIE_NAME
from .service import FlagService
from .session import FlagSession
from .storage import FlagStorage


def require_auth(request: Request) -> dict:
    """Require a valid authenticated user. Returns {"uid", "username", "role"}.

    When auth is disabled (JWT_SECRET empty), returns a synthetic dev user.
    """
    if not JWT_SECRET:
        return {"uid": 1, "username": "dev", "role": "admin"}

    user = getattr(request.state, "user", None)
    role = getattr(request.state, "role", None)
    if not user or user == "anonymous":
        raise HTTPException(status_code=401, detail="Authentication required")
    return {"uid": getattr(request.state, "uid", 0), "username": user, "role": role}


def require_admin(request: Request) -> dict:
    """Require an authenticated user with admin role.

    When auth is disabled (JWT_SECRET empty), passes through (dev mode).
    """
    user = require_auth(request)
    if user["role"] != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return user


def get_storage() -> FlagStorage:
    return FlagStorage()


def current_account(request: Request) -> Account:
    """The account acting on flags: the token's user, or the anonymous visitor."""
    if not JWT_SECRET:
        return dev_account()
    user = getattr(request.state, "user", None)
    uid = getattr(request.state, "uid", 0)
    if not user or user == "anonymous" or not uid:
        return ANONYMOUS
    return user_account(uid, user, getattr(request.state, "role", None) or "read")


def get_flag_service(
    request: Request,
    storage: FlagStorage = Depends(get_storage),
    account: Account = Depends(current_account),
) -> FlagService:
    """A FlagService for this request. Cookies it queues are written by FlagSessionMiddleware."""
    sid = request.cookies.get(SESSION_COOKIE_NAME, "") if account.is_anonymous else ""
    session = FlagSession(account=account, sid=sid, cookies=dict(request.cookies))
    request.state.flag_session = session
    return FlagService(storage, session)
