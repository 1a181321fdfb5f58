"""
JWT authentication middleware.

Enabled by default. Set DISABLE_AUTH=true in .env to bypass for development.
Token claims: {"sub": "username", "uid": 12, "role": "admin|read", "iat": ..., "exp": ...}

Action links, flag status and entity flag listings are public. Callers
without a usable token reach them as the anonymous visitor (uid 0) and the
flag's own permission checks decide what they may do. Everything else
answers 401.

CLI token generator:
    python -m flag_api.middleware.auth --user admin --uid 1 --role admin
"""
import time
from typing import Optional

import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRY_HOURS

PUBLIC_PATHS = frozenset({
    "/api/health",
    "/api/auth/login",
    "/api/auth/register",
    "/docs",
    "/openapi.json",
    "/redoc",
})

PUBLIC_PREFIXES = ("/flag/", "/api/flaggings/", "/api/entities/")


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def _bearer_claims(request: Request) -> tuple[bool, Optional[dict]]:
    """(header present, decoded claims or None when the token is bad)."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return False, None
    try:
        return True, jwt.decode(auth_header[7:], JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        return True, None


class AuthMiddleware(BaseHTTPMiddleware):
    """Puts user, uid and role on request.state. No-op when JWT_SECRET is empty."""

    async def dispatch(self, request: Request, call_next):
        if not JWT_SECRET:
            return await call_next(request)

        has_header, claims = _bearer_claims(request)
        if claims is not None:
            request.state.user = claims.get("sub", "anonymous")
            request.state.uid = int(claims.get("uid") or 0)
            request.state.role = claims.get("role", "read")
        elif not _is_public(request.url.path):
            detail = "Invalid or expired token" if has_header else "Missing or invalid Authorization header"
            return JSONResponse(status_code=401, content={"detail": detail})

        return await call_next(request)


def encode_token(user: str, uid: int, role: str = "read") -> tuple[str, int]:
    """Signed token for a user. Returns (token, expires_in_seconds)."""
    now = int(time.time())
    expires_in = JWT_EXPIRY_HOURS * 3600
    claims = {
        "sub": user,
        "uid": uid,
        "role": role,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM), expires_in


def generate_token(user: str, uid: int, role: str = "read") -> str:
    return encode_token(user, uid, role)[0]


if __name__ == "__main__":
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="Generate a JWT for the flag API")
    parser.add_argument("--user", required=True, help="Username (sub claim)")
    parser.add_argument("--uid", required=True, type=int, help="User id flaggings are recorded against")
    parser.add_argument("--role", default="admin", help="Role")
    args = parser.parse_args()

    if not JWT_SECRET:
        print("ERROR: FLAG_JWT_SECRET not set in .env. Auth is disabled.")
        sys.exit(1)

    print(f"Token for {args.user} (uid={args.uid}, {args.role}):")
    print(generate_token(args.user, args.uid, args.role))
