"""
Flagging state and actions for the acting user: status, counts, who flagged
what, bulk access checks, rendered links and a JSON toggle endpoint.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse

from ..dependencies import get_flag_service
from ..helpers import error_message, error_status
from ..models.schemas import AccessRequest, FlagAction, FlagStatus

router = APIRouter()
log = logging.getLogger("flag_api.flaggings")


def _get_flag_or_404(service, name: str):
    flag = service.get_flag(name)
    if flag is None:
        raise HTTPException(404, f"Flag {name!r} not found")
    return flag


def _get_entity_or_404(flag, entity_id: int):
    entity = flag.fetch_entity(entity_id)
    if entity is None:
        raise HTTPException(404, f"{flag.entity_type} {entity_id} not found")
    return entity


# ---------- Per-flag ----------

@router.get("/api/flaggings/{flag_name}/top")
def top_flagged(
    flag_name: str,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service=Depends(get_flag_service),
):
    """Most flagged entities for a flag."""
    flag = _get_flag_or_404(service, flag_name)
    return {"flag": flag.name, "results": service.storage.top_counts(flag.fid, limit, offset)}


@router.get("/api/flaggings/{flag_name}/user-count")
def user_count(flag_name: str, uid: Optional[int] = None, service=Depends(get_flag_service)):
    """Number of entities a user (default: the acting user) has flagged."""
    flag = _get_flag_or_404(service, flag_name)
    uid = service.current_account.uid if uid is None else uid
    if flag.is_global:
        uid = 0
    return {"flag": flag.name, "uid": uid, "count": flag.get_user_count(uid)}


@router.post("/api/flaggings/{flag_name}/access")
def access_multiple(flag_name: str, body: AccessRequest, service=Depends(get_flag_service)):
    """Access for many entities at once: {"entity_ids": {id: "flag"|"unflag"}}."""
    flag = _get_flag_or_404(service, flag_name)
    return {"flag": flag.name, "access": flag.access_multiple(body.entity_ids)}


@router.get("/api/flaggings/{flag_name}/{entity_id}", response_model=FlagStatus)
def flagging_status(flag_name: str, entity_id: int, service=Depends(get_flag_service)):
    flag = _get_flag_or_404(service, flag_name)
    _get_entity_or_404(flag, entity_id)
    return FlagStatus(
        flag=flag.name,
        entity_type=flag.entity_type,
        entity_id=entity_id,
        flagged=flag.is_flagged(entity_id),
        count=flag.get_count(entity_id),
        access={action: flag.access(entity_id, action) for action in ("flag", "unflag")},
        title=str(flag.get_title(entity_id) or ""),
    )


@router.post("/api/flaggings/{flag_name}/{entity_id}")
def toggle(flag_name: str, entity_id: int, body: FlagAction, service=Depends(get_flag_service)):
    """Flag or unflag; responds like the JavaScript toggle of an action link."""
    flag = _get_flag_or_404(service, flag_name)
    _get_entity_or_404(flag, entity_id)
    if body.skip_permission_check and not service.current_account.is_admin:
        raise HTTPException(403, "Only admins can skip permission checks")

    if not flag.flag(body.action, entity_id, skip_permission_check=body.skip_permission_check):
        return JSONResponse(
            status_code=error_status(flag.errors),
            content={"status": False, "errorMessage": error_message(flag.errors), "errors": flag.errors},
        )
    return service.build_javascript_info(flag, entity_id, body.action)


@router.get("/api/flaggings/{flag_name}/{entity_id}/link", response_class=HTMLResponse)
def flag_link(
    flag_name: str,
    entity_id: int,
    action: Optional[str] = Query(None, pattern=r"^(flag|unflag)$"),
    destination: Optional[str] = None,
    service=Depends(get_flag_service),
):
    """Rendered flag/unflag link. Empty when the user may not flag the entity."""
    flag = _get_flag_or_404(service, flag_name)
    _get_entity_or_404(flag, entity_id)
    flagged = flag.is_flagged(entity_id)
    if not flagged and not flag.access(entity_id, "flag"):
        return HTMLResponse("")
    action = action or ("unflag" if flagged else "flag")
    return HTMLResponse(str(flag.theme(action, entity_id, destination=destination)))


# ---------- Per-entity and per-user ----------

@router.get("/api/entities/{entity_type}/{entity_id}/flags")
def entity_flags(
    entity_type: str,
    entity_id: int,
    view_mode: Optional[str] = None,
    service=Depends(get_flag_service),
):
    """Flags enabled for an entity with the acting user's state.

    With view_mode, only flags shown in that view mode's links are listed,
    each with its rendered link.
    """
    entity = service.load_entity(entity_type, entity_id)
    if entity is None:
        raise HTTPException(404, f"{entity_type} {entity_id} not found")

    results = []
    for flag in service.get_flags(entity_type, entity.bundle).values():
        flag.remember_entity(entity_id, entity)
        if view_mode and not flag.shows_in_entity_links(view_mode):
            continue
        flagged = flag.is_flagged(entity_id)
        access = {action: flag.access(entity_id, action) for action in ("flag", "unflag")}
        item = {
            "name": flag.name,
            "title": str(flag.get_title(entity_id) or ""),
            "global": flag.is_global,
            "flagged": flagged,
            "count": flag.get_count(entity_id),
            "access": access,
        }
        if view_mode and (flagged or access["flag"]):
            item["link"] = str(flag.theme("unflag" if flagged else "flag", entity_id))
        results.append(item)
    return {"entity_type": entity_type, "entity_id": entity_id, "flags": results}


@router.get("/api/entities/{entity_type}/{entity_id}/flaggings")
def entity_flaggings(
    entity_type: str,
    entity_id: int,
    flag: Optional[str] = None,
    service=Depends(get_flag_service),
):
    """Who flagged an entity, newest first."""
    if flag is not None:
        _get_flag_or_404(service, flag)
    return {"flaggings": service.get_entity_flags(entity_type, entity_id, flag)}


@router.get("/api/users/me/flaggings")
def my_flaggings(entity_type: str = Query(..., min_length=1), service=Depends(get_flag_service)):
    """Entity ids the acting user has flagged, per flag. Global flaggings are included."""
    user_flags = service.get_user_flags(entity_type)
    return {
        "uid": service.current_account.uid,
        "flags": {name: sorted(rows) for name, rows in user_flags.items()},
    }
