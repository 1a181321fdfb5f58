"""
Flag API - application entry point.

Run with: python -m uvicorn flag_api.main:app --reload --port 8001
Create the tables first with: python -m flag_api.schema
"""
import logging
import sys
from contextlib import asynccontextmanager

import psycopg2
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from psycopg2.errors import UniqueViolation

from .config import ALLOWED_ORIGINS, AUTH_DISABLED, FLAG_API_VERSION, JWT_SECRET
from .database import close_pool
from .middleware.auth import AuthMiddleware
from .middleware.logging import LoggingMiddleware
from .middleware.rate_limit import RateLimitMiddleware
from .middleware.session import FlagSessionMiddleware
from .routers import auth, flaggings, flags, health, links

_log = logging.getLogger("flag_api")


def _check_auth_config():
    if AUTH_DISABLED:
        _log.warning(
            "DISABLE_AUTH=true -- authentication is DISABLED. "
            "Every request acts as an admin (uid 1) and may manage flags. "
            "Remove DISABLE_AUTH from .env to enforce authentication."
        )
    elif not JWT_SECRET:
        _log.critical(
            "FLAG_JWT_SECRET is not set and DISABLE_AUTH is not true. "
            "Refusing to start without authentication configured. "
            "Either set FLAG_JWT_SECRET in .env (32+ chars) or set DISABLE_AUTH=true for development."
        )
        sys.exit(1)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    close_pool()


_check_auth_config()

app = FastAPI(
    title="Flag API",
    version=f"{FLAG_API_VERSION}.0",
    description="Flags and flaggings: bookmarks, likes, follows and moderation marks on site content",
    lifespan=lifespan,
)

# Starlette runs the last added middleware first: logging sees every request,
# then rate limiting, auth, and finally the session cookies on the way out.
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
    allow_credentials=True,
)
app.add_middleware(FlagSessionMiddleware)
app.add_middleware(AuthMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(LoggingMiddleware)

for router_module in (auth, health, flags, flaggings, links):
    app.include_router(router_module.router)


@app.exception_handler(UniqueViolation)
async def handle_conflict(request, exc):
    _log.warning("Conflicting write on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": "Conflicting update, try again"})


@app.exception_handler(psycopg2.Error)
async def handle_db_error(request, exc):
    _log.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Database unavailable"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
