"""
Shared helper functions used across routers and middleware.
"""
from urllib.parse import urlsplit

from starlette.requests import Request


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def safe_destination(destination: str, default: str = "/") -> str:
    """Only local paths may be redirected to. Prevents open redirects via ?destination=."""
    if not destination:
        return default
    destination = destination.strip()
    parts = urlsplit(destination)
    if parts.scheme or parts.netloc or not destination.startswith("/") or destination.startswith("//"):
        return default
    if "\\" in destination or any(ord(ch) < 32 for ch in destination):
        return default
    return destination


def error_status(errors: dict) -> int:
    """HTTP status for a failed flag action."""
    if "access-denied" in errors:
        return 403
    return 400


def error_message(errors: dict) -> str:
    return " ".join(str(message) for message in errors.values())
