"""
Signed tokens for action links.

A link token binds the flag, the entity and the acting user (or anonymous
session), so a link copied from someone else's page cannot toggle a flag on
their behalf.
"""
import hashlib
import hmac

from .config import LINK_TOKEN_SECRET


def _token_value(flag_name: str, entity_id) -> str:
    return f"flag-{flag_name}-{entity_id}"


def get_token(flag_name: str, entity_id, seed) -> str:
    if not LINK_TOKEN_SECRET:
        return ""
    message = f"{_token_value(flag_name, entity_id)}:{seed}".encode("utf-8")
    return hmac.new(LINK_TOKEN_SECRET.encode("utf-8"), message, hashlib.sha256).hexdigest()[:32]


def valid_token(token: str, flag_name: str, entity_id, seed) -> bool:
    """Unsigned deployments (no secret configured) accept every link."""
    if not LINK_TOKEN_SECRET:
        return True
    # Every visitor without a session shares the empty seed.
    if seed == "":
        return False
    return hmac.compare_digest(token or "", get_token(flag_name, entity_id, seed))
