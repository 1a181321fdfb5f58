import logging

import psycopg2
from fastapi import APIRouter, Depends

from ..config import FLAG_API_VERSION
from ..dependencies import get_flag_service, require_admin

router = APIRouter()
log = logging.getLogger("flag_api.health")


@router.get("/api/health")
def health():
    return {"status": "ok", "api_version": FLAG_API_VERSION}


@router.get("/api/health/details", dependencies=[Depends(require_admin)])
def health_details(service=Depends(get_flag_service)):
    """Detailed API health diagnostics."""
    try:
        flags = service.get_flags()
        defaults = service.get_default_flags(include_disabled=True)
    except psycopg2.Error as e:
        log.error("Health check failed: %s", e)
        return {"status": "unhealthy", "database": "unavailable", "error": str(e)}
    return {
        "status": "healthy",
        "database": "connected",
        "api_version": FLAG_API_VERSION,
        "flags": len(flags),
        "broken_flags": sorted(name for name, flag in flags.items() if flag.broken),
        "default_flags": len(defaults),
        "uninstalled_default_flags": sorted(set(defaults) - set(flags)),
    }
