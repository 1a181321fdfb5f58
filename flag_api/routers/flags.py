"""
Flag administration: create, edit, delete, reset, revert and move flag
definitions between sites. Admin role required throughout.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..config import FLAG_API_VERSION
from ..dependencies import get_flag_service, require_admin
from ..entities import get_entity_type
from ..handlers.base import BaseFlag
from ..models.schemas import FlagCreate, FlagImport, FlagUpdate, ResetRequest
from ..plugins.flag_types import manager as flag_type_manager
from ..plugins.link_types import manager as link_type_manager

router = APIRouter(dependencies=[Depends(require_admin)])
log = logging.getLogger("flag_api.flags")


# ---------- Helpers ----------

def _summary(flag: BaseFlag) -> dict:
    return {
        "fid": flag.fid,
        "name": flag.name,
        "title": flag.title,
        "entity_type": flag.entity_type,
        "global": flag.is_global,
        "types": flag.types,
        "plugin_id": flag.plugin_id,
        "link_type": flag.settings.get("link_type"),
        "module": flag.module,
        "status": flag.status,
        "broken": flag.broken,
    }


def _detail(flag: BaseFlag) -> dict:
    flag.fetch_roles()
    return {
        **_summary(flag),
        "roles": flag.roles,
        "options": flag.get_stored_options(),
        "locked": sorted(flag.locked),
        "edit_path": flag.admin_path("edit"),
    }


def _definition(flag: BaseFlag) -> dict:
    """Portable definition, accepted back by /api/flag-import."""
    flag.fetch_roles()
    return {
        "entity_type": flag.entity_type,
        "name": flag.name,
        "title": flag.title,
        "global": flag.is_global,
        "types": list(flag.types),
        "roles": flag.roles,
        "options": flag.get_stored_options(),
        "api_version": FLAG_API_VERSION,
    }


def _get_flag_or_404(service, name: str) -> BaseFlag:
    flag = service.get_flag(name)
    if flag is None:
        raise HTTPException(404, f"Flag {name!r} not found")
    return flag


def _apply_and_validate(flag: BaseFlag, values: dict):
    flag.form_input(values)
    # A changed link type brings its own option defaults.
    flag.construct()
    errors = flag.validate()
    if errors:
        raise HTTPException(422, errors)


# ---------- Plugins and permissions ----------

@router.get("/api/flag-types")
def list_flag_types():
    """Flag type plugins, ordered by title."""
    definitions = flag_type_manager.get_definitions()
    results = []
    for plugin_id, title in flag_type_manager.get_all_flag_types().items():
        entity_type = definitions[plugin_id]["entity_type"]
        info = get_entity_type(entity_type) if entity_type else None
        results.append({
            "id": plugin_id,
            "title": title,
            "entity_type": entity_type,
            "bundles": info.bundles if info else {},
            "view_modes": info.view_modes if info else {},
        })
    return {"flag_types": results}


@router.get("/api/flag-link-types")
def list_link_types():
    return {"link_types": list(link_type_manager.get_definitions().values())}


@router.get("/api/flag-permissions")
def list_permissions(service=Depends(get_flag_service)):
    storage = service.storage
    permissions = service.get_permissions()
    return {
        "roles": storage.all_roles(),
        "permissions": {
            permission: {**info, "roles": storage.roles_with_permission(permission)}
            for permission, info in permissions.items()
        },
    }


@router.put("/api/flag-permissions/{role}")
def set_role_permissions(role: str, changes: dict[str, bool], service=Depends(get_flag_service)):
    """Grant (true) or revoke (false) flag permissions for a role."""
    known = service.get_permissions()
    unknown = [permission for permission in changes if permission not in known]
    if unknown:
        raise HTTPException(400, f"Unknown permissions: {', '.join(sorted(unknown))}")
    service.storage.set_role_permissions(role, changes)
    log.info("Updated flag permissions for role %s: %s", role, changes)
    return {"role": role, "permissions": sorted(service.storage.permissions_for_roles([role]))}


# ---------- Flags defined in code ----------

@router.get("/api/flag-defaults")
def list_default_flags(service=Depends(get_flag_service)):
    stored = service.get_flags()
    return {"flags": [
        {
            "name": name,
            "title": flag.title,
            "module": flag.module,
            "status": flag.status,
            "compatible": flag.is_compatible(),
            "stored": name in stored,
        }
        for name, flag in service.get_default_flags(include_disabled=True).items()
    ]}


@router.post("/api/flag-defaults/install")
def install_default_flags(service=Depends(get_flag_service)):
    return {"installed": service.install_default_flags()}


@router.post("/api/flag-defaults/{name}/{operation}")
def set_default_flag_status(name: str, operation: str, service=Depends(get_flag_service)):
    """Enable or disable a flag provided by a module."""
    if operation not in ("enable", "disable"):
        raise HTTPException(404, "Not found")
    flag = service.get_default_flags(include_disabled=True).get(name)
    if flag is None:
        raise HTTPException(404, f"No module provides a flag named {name!r}")
    if operation == "enable":
        flag.enable()
    else:
        flag.disable()
    service.reset_static("default_flags", "flags")
    return {"name": name, "status": flag.status}


# ---------- Import / export ----------

@router.get("/api/flag-export")
def export_flags(names: Optional[str] = Query(None, description="Comma-separated flag names"),
                 service=Depends(get_flag_service)):
    flags = service.get_flags()
    if names:
        wanted = [n.strip() for n in names.split(",") if n.strip()]
        missing = [n for n in wanted if n not in flags]
        if missing:
            raise HTTPException(404, f"Flags not found: {', '.join(missing)}")
        flags = {n: flags[n] for n in wanted}
    return {"api_version": FLAG_API_VERSION, "flags": [_definition(f) for f in flags.values()]}


@router.post("/api/flag-import")
def import_flags(body: FlagImport, service=Depends(get_flag_service)):
    """Create or overwrite flags from exported definitions. Nothing is saved if any is invalid."""
    if body.api_version != FLAG_API_VERSION:
        raise HTTPException(422, {"api_version": [{
            "error": "flag_api_version",
            "message": f"Definitions use API version {body.api_version}; "
                       f"this site supports version {FLAG_API_VERSION}.",
        }]})

    flags, errors = [], {}
    for config in body.flags:
        config = {k: v for k, v in config.items() if k not in ("fid", "module", "status")}
        name = config.get("name") or ""
        existing = service.get_flag(name)
        if existing is not None and not body.overwrite:
            errors[name] = {"name": [{
                "error": "flag_exists",
                "message": f"A flag named {name!r} already exists.",
            }]}
            continue
        flag = BaseFlag.factory_by_array(config, service)
        if existing is not None:
            flag.fid = existing.fid
        flag_errors = flag.validate()
        if flag_errors:
            errors[name] = flag_errors
            continue
        flags.append((flag, existing.name if existing else None))

    if errors:
        raise HTTPException(422, errors)

    with service.storage.transaction():
        for flag, old_name in flags:
            flag.save()
            service.save_roles(flag, old_name)
    log.info("Imported flags: %s", ", ".join(f.name for f, _ in flags))
    return {"imported": [f.name for f, _ in flags]}


# ---------- Flag CRUD ----------

@router.get("/api/flags")
def list_flags(
    entity_type: Optional[str] = None,
    bundle: Optional[str] = None,
    service=Depends(get_flag_service),
):
    flags = service.get_flags(entity_type, bundle)
    return {"flags": [_summary(flag) for flag in flags.values()]}


@router.post("/api/flags", status_code=201)
def create_flag(body: FlagCreate, service=Depends(get_flag_service)):
    flag = service.create_flag(body.entity_type)
    _apply_and_validate(flag, {
        "name": body.name,
        "title": body.title,
        "global": body.is_global,
        "types": body.types,
        "roles": body.roles.model_dump(),
        "options": body.options,
    })
    with service.storage.transaction():
        flag.save()
        service.save_roles(flag)
    return _detail(flag)


@router.get("/api/flags/{name}")
def get_flag(name: str, service=Depends(get_flag_service)):
    return _detail(_get_flag_or_404(service, name))


@router.put("/api/flags/{name}")
def update_flag(name: str, body: FlagUpdate, service=Depends(get_flag_service)):
    flag = _get_flag_or_404(service, name)
    flag.fetch_roles()
    values = body.model_dump(exclude_none=True)
    if "is_global" in values:
        values["global"] = values.pop("is_global")

    default_flag = flag.find_default_flag()
    locked = set(default_flag.locked) if default_flag else set()
    blocked = sorted(locked & (set(values) | set(values.get("options", {}))))
    if blocked:
        raise HTTPException(400, f"Locked by module {default_flag.module}: {', '.join(blocked)}")

    old_name = flag.name
    _apply_and_validate(flag, values)
    with service.storage.transaction():
        flag.save()
        service.save_roles(flag, old_name)
    return _detail(flag)


@router.delete("/api/flags/{name}")
def delete_flag(name: str, service=Depends(get_flag_service)):
    flag = _get_flag_or_404(service, name)
    flag.delete()
    return {"deleted": name}


@router.post("/api/flags/{name}/reset")
def reset_flag(name: str, body: Optional[ResetRequest] = None, service=Depends(get_flag_service)):
    """Remove all flaggings of the flag, or of one entity when entity_id is given."""
    flag = _get_flag_or_404(service, name)
    entity_id = body.entity_id if body else None
    return {"name": name, "entity_id": entity_id, "removed": service.reset_flag(flag, entity_id)}


@router.post("/api/flags/{name}/revert")
def revert_flag(name: str, service=Depends(get_flag_service)):
    """Restore a stored flag to its definition in code."""
    flag = _get_flag_or_404(service, name)
    result = flag.revert()
    if result is None:
        raise HTTPException(404, f"Flag {name!r} does not override a flag defined in code")
    if result is False:
        raise HTTPException(409, f"The code definition of {name!r} uses an incompatible API version")
    return _detail(service.get_flag(name))
