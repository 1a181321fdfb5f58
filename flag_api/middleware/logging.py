"""
Request logging middleware.

One line per request: method, path, status, duration, client and, once the
flag service has run, the acting uid. 5xx log as errors; 4xx and requests
slower than SLOW_REQUEST_MS log as warnings.
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..helpers import client_ip

SLOW_REQUEST_MS = 3000

logger = logging.getLogger("flag_api")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)


def _level(status_code: int, duration_ms: float) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400 or duration_ms > SLOW_REQUEST_MS:
        return logging.WARNING
    return logging.INFO


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 1)

        session = getattr(request.state, "flag_session", None)
        uid = session.account.uid if session is not None else "-"
        logger.log(
            _level(response.status_code, duration_ms),
            "%s %s status=%s duration=%sms client=%s uid=%s",
            request.method, request.url.path, response.status_code, duration_ms,
            client_ip(request), uid,
        )
        return response
