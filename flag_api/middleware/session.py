"""
Writes the cookies a request's FlagSession queued: the anonymous session id
and the cookie mirror of anonymous flaggings.
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..config import SESSION_COOKIE_NAME

COOKIE_MAX_AGE = 60 * 60 * 24 * 365


class FlagSessionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        session = getattr(request.state, "flag_session", None)
        if session is None:
            return response

        for name, value in session.outgoing.items():
            if value is None:
                response.delete_cookie(name, path="/")
            else:
                # Client-side code reads the flag mirror cookies; the session id stays hidden.
                response.set_cookie(
                    name, value, max_age=COOKIE_MAX_AGE, path="/", samesite="lax",
                    httponly=name == SESSION_COOKIE_NAME,
                )
        return response
