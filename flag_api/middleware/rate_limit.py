"""
In-memory sliding window rate limiter.

Default: 100 requests per 60 seconds per client IP. Action links (/flag/...)
write on GET, so they also draw from a smaller per-IP budget of their own.
Configure via RATE_LIMIT_REQUESTS, RATE_LIMIT_ACTIONS and RATE_LIMIT_WINDOW.
"""
import time
from collections import defaultdict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..config import RATE_LIMIT_ACTIONS, RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW
from ..helpers import client_ip

# {(bucket, client_ip): [timestamp, ...]}
_requests: dict[tuple[str, str], list[float]] = defaultdict(list)


def _hit(bucket: str, ip: str, limit: int, now: float):
    """Record a request. Returns seconds to wait when the bucket is full, else None."""
    key = (bucket, ip)
    cutoff = now - RATE_LIMIT_WINDOW
    _requests[key] = [t for t in _requests[key] if t > cutoff]
    if len(_requests[key]) >= limit:
        return max(1, int(RATE_LIMIT_WINDOW - (now - _requests[key][0])) + 1)
    _requests[key].append(now)
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if RATE_LIMIT_REQUESTS <= 0:
            return await call_next(request)

        now = time.time()
        ip = client_ip(request)
        retry_after = _hit("all", ip, RATE_LIMIT_REQUESTS, now)
        if retry_after is None and RATE_LIMIT_ACTIONS > 0 and request.url.path.startswith("/flag/"):
            retry_after = _hit("actions", ip, RATE_LIMIT_ACTIONS, now)

        if retry_after is not None:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded"},
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)
