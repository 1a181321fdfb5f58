"""
Action link endpoints.

/flag/{action}/{flag}/{entity_id} is the target of "normal" and "toggle"
links. It checks the link token, runs the action and either redirects back
to ?destination= (local paths only) or, with ?js=1, answers with the JSON the
toggle script swaps in.

/flag/confirm/... shows a confirmation form on GET and acts on POST.
"""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from markupsafe import Markup

from ..dependencies import get_flag_service
from ..helpers import error_message, error_status, safe_destination

router = APIRouter()
log = logging.getLogger("flag_api.links")

ACTIONS = ("flag", "unflag")
BAD_TOKEN = "Bad token. You seem to have followed an invalid link."


def _load(service, action: str, flag_name: str, entity_id: int):
    if action not in ACTIONS:
        raise HTTPException(404, "Not found")
    flag = service.get_flag(flag_name)
    if flag is None:
        raise HTTPException(404, f"Flag {flag_name!r} not found")
    entity = flag.fetch_entity(entity_id)
    if entity is None:
        raise HTTPException(404, f"{flag.entity_type} {entity_id} not found")
    return flag, entity


def _destination(destination: Optional[str], entity) -> str:
    return safe_destination(destination, default=safe_destination(entity.url or ""))


def _failure(status_code: int, message: str, js: bool, errors: dict = None):
    if js:
        return JSONResponse(
            status_code=status_code,
            content={"status": False, "errorMessage": message, "errors": errors or {}},
        )
    raise HTTPException(status_code, message)


@router.get("/flag/{action}/{flag_name}/{entity_id}")
def action_link(
    action: str,
    flag_name: str,
    entity_id: int,
    destination: Optional[str] = None,
    token: str = "",
    js: bool = False,
    service=Depends(get_flag_service),
):
    flag, entity = _load(service, action, flag_name, entity_id)
    link_type = flag.get_link_type()
    redirect_to = _destination(destination, entity)

    if not link_type.uses_token:
        # Link types without tokens confirm on their own page.
        return RedirectResponse(
            link_type.build_link(action, flag.name, entity_id, destination=redirect_to),
            status_code=303,
        )

    if not service.check_link_token(token, flag.name, entity_id):
        log.warning("Bad link token for %s %s on %s %s", action, flag.name, flag.entity_type, entity_id)
        return _failure(403, BAD_TOKEN, js)

    if not flag.flag(action, entity_id):
        return _failure(error_status(flag.errors), error_message(flag.errors), js, flag.errors)

    if js:
        return service.build_javascript_info(flag, entity_id, action, destination=redirect_to)
    return RedirectResponse(redirect_to, status_code=303)


@router.get("/flag/confirm/{action}/{flag_name}/{entity_id}", response_class=HTMLResponse)
def confirm_form(
    action: str,
    flag_name: str,
    entity_id: int,
    destination: Optional[str] = None,
    service=Depends(get_flag_service),
):
    flag, entity = _load(service, action, flag_name, entity_id)
    if not flag.access(entity_id, action):
        raise HTTPException(403, "You are not allowed to flag, or unflag, this content.")

    cancel = _destination(destination, entity)
    query = {"destination": cancel, "token": service.link_token(flag.name, entity_id)}
    post_url = f"/flag/confirm/{action}/{flag.name}/{entity_id}?{urlencode(query)}"
    question = flag.get_label(f"{action}_confirmation", entity_id) or ""
    submit = flag.get_label(f"{action}_short", entity_id) or action.capitalize()

    page = Markup(
        '<form class="flag-confirm-form" method="post" action="{}">'
        '<p class="flag-confirm-question">{}</p>'
        '<button type="submit">{}</button> <a href="{}">Cancel</a>'
        '</form>'
    ).format(post_url, question, submit, cancel)
    return HTMLResponse(str(page))


@router.post("/flag/confirm/{action}/{flag_name}/{entity_id}")
def confirm_submit(
    action: str,
    flag_name: str,
    entity_id: int,
    destination: Optional[str] = None,
    token: str = "",
    service=Depends(get_flag_service),
):
    flag, entity = _load(service, action, flag_name, entity_id)
    if not service.check_link_token(token, flag.name, entity_id):
        raise HTTPException(403, BAD_TOKEN)
    if not flag.flag(action, entity_id):
        raise HTTPException(error_status(flag.errors), error_message(flag.errors))
    return RedirectResponse(_destination(destination, entity), status_code=303)
