"""
Application configuration loaded from environment / .env file.
"""
import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _load_env_file(path: Path):
    """KEY=value lines; variables already set in the environment win."""
    if not path.exists():
        return
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, _, value = line.partition('=')
                os.environ.setdefault(key.strip(), value.strip())


_load_env_file(PROJECT_ROOT / '.env')


def _env_flag(name: str, default: str = "") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


DB_CONFIG = {
    'host': os.environ.get('DB_HOST', 'localhost'),
    'port': int(os.environ.get('DB_PORT', '5432')),
    'database': os.environ.get('DB_NAME', 'flag'),
    'user': os.environ.get('DB_USER', 'postgres'),
    'password': os.environ.get('DB_PASSWORD', ''),
}
DB_POOL_MIN = int(os.environ.get('DB_POOL_MIN', '2'))
DB_POOL_MAX = int(os.environ.get('DB_POOL_MAX', '20'))

# JWT auth -- requires FLAG_JWT_SECRET in .env (32+ chars).
# Set DISABLE_AUTH=true to bypass auth in development.
AUTH_DISABLED = _env_flag("DISABLE_AUTH")
_jwt_from_env = os.environ.get("FLAG_JWT_SECRET") or ""
JWT_SECRET = "" if AUTH_DISABLED else _jwt_from_env
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 8

# CORS allowed origins (comma-separated in env, or default for local dev)
_origins_raw = os.environ.get("ALLOWED_ORIGINS", "")
if _origins_raw:
    ALLOWED_ORIGINS = [o.strip() for o in _origins_raw.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = [
        "http://localhost:8001",
        "http://localhost:8080",
        "http://127.0.0.1:8001",
        "http://127.0.0.1:8080",
    ]

# Rate limiting
RATE_LIMIT_REQUESTS = int(os.environ.get("RATE_LIMIT_REQUESTS", "100"))
RATE_LIMIT_WINDOW = int(os.environ.get("RATE_LIMIT_WINDOW", "60"))
RATE_LIMIT_ACTIONS = int(os.environ.get("RATE_LIMIT_ACTIONS", "30"))

# Anonymous users may flag only when they get a session id.
ANONYMOUS_FLAGGING = _env_flag("FLAG_ANONYMOUS_FLAGGING")
# Cached pages cannot show per-visitor state, so anonymous flaggings are
# mirrored into cookies that client-side code reads back.
PAGE_CACHE_ENABLED = _env_flag("FLAG_PAGE_CACHE")
SESSION_COOKIE_NAME = os.environ.get("FLAG_SESSION_COOKIE", "flag_session")

# Action links are signed with this secret. Empty means links are unsigned.
LINK_TOKEN_SECRET = os.environ.get("FLAG_LINK_SECRET") or JWT_SECRET

# Flags defined in code, as a JSON list of flag definitions.
FLAG_DEFAULTS_FILE = os.environ.get("FLAG_DEFAULTS_FILE", "")

# Definitions exported with a different API version are not imported.
FLAG_API_VERSION = 3

FLAG_ADMIN_PATH = "/api/flags"
