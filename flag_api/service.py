"""
Flag API for one request.

FlagService ties together the storage, the acting session and the
request-scoped memo caches ("flags", "counts", "user_flags",
"entity_flags", "entities", "titles", "permissions"). A new service is
built per request, so the caches never outlive it; toggles reset the
caches they invalidate.
"""
import json
import logging
import time
from pathlib import Path
from typing import Optional

from . import hooks
from .accounts import Account
from .config import ANONYMOUS_FLAGGING, FLAG_DEFAULTS_FILE
from .entities import Entity
from .handlers.base import BaseFlag
from .handlers.factory import create_handler
from .session import FlagSession
from .tokens import get_token, valid_token

log = logging.getLogger("flag_api.service")


class FlagService:

    def __init__(self, storage, session: FlagSession = None):
        self.storage = storage
        self.session = session or FlagSession()
        self.request_time = int(time.time())
        self._static: dict[str, dict] = {}

    @property
    def current_account(self) -> Account:
        return self.session.account

    def static(self, name: str) -> dict:
        return self._static.setdefault(name, {})

    def reset_static(self, *names: str):
        """Drop the named caches, or all of them when called without names."""
        if not names:
            self._static.clear()
        for name in names:
            self._static.pop(name, None)

    # ---------- Flags ----------

    def get_flags(self, entity_type: str = None, content_subtype: str = None) -> dict[str, BaseFlag]:
        """Stored flags by name, optionally only those enabled for an entity type and bundle."""
        cache = self.static("flags")
        if "all" not in cache:
            flags = {}
            for row in self.storage.load_flags():
                flag = BaseFlag.factory_by_row(row, self)
                hooks.alter("flag_alter", flag)
                flags[flag.name] = flag
            defaults = self.get_default_flags(include_disabled=True)
            for name, flag in flags.items():
                if name in defaults:
                    flag.module = defaults[name].module
            cache["all"] = dict(sorted(flags.items(), key=lambda item: (
                item[1].settings.get("weight", 0), item[0])))
        flags = cache["all"]
        if entity_type is None:
            return dict(flags)
        return {name: flag for name, flag in flags.items()
                if flag.access_entity_enabled(entity_type, content_subtype)}

    def get_flag(self, name: str = None, fid: int = None) -> Optional[BaseFlag]:
        flags = self.get_flags()
        if name is not None:
            return flags.get(name)
        for flag in flags.values():
            if flag.fid == fid:
                return flag
        return None

    def create_flag(self, entity_type: str) -> BaseFlag:
        """An empty, unsaved flag for the entity type."""
        return create_handler(entity_type, self)

    # ---------- Flags defined in code ----------

    def _default_flag_configs(self) -> list[dict]:
        configs = []
        for module in dict.fromkeys(hooks.registry.implements("flag_default_flags")):
            for config in hooks.registry.invoke(module, "flag_default_flags"):
                configs.append({"module": module, **config})
        if FLAG_DEFAULTS_FILE:
            path = Path(FLAG_DEFAULTS_FILE)
            if path.exists():
                with open(path, encoding="utf-8") as f:
                    for config in json.load(f):
                        configs.append({"module": path.stem, **config})
            else:
                log.warning("FLAG_DEFAULTS_FILE %s does not exist", path)
        return configs

    def get_default_flags(self, include_disabled: bool = False) -> dict[str, BaseFlag]:
        cache = self.static("default_flags")
        if "all" not in cache:
            flag_status = self.storage.get_variable("flag_default_flag_status", {})
            defaults = {}
            for config in self._default_flag_configs():
                flag = BaseFlag.factory_by_array(config, self)
                flag.status = flag_status.get(flag.name, config.get("status", True))
                defaults[flag.name] = flag
            cache["all"] = defaults
        if include_disabled:
            return dict(cache["all"])
        return {name: flag for name, flag in cache["all"].items() if flag.status}

    def install_default_flags(self) -> list[str]:
        """Save enabled, compatible code flags that are not stored yet."""
        installed = []
        existing = self.get_flags()
        for name, flag in self.get_default_flags().items():
            if name in existing:
                continue
            if not flag.is_compatible():
                log.warning("Default flag %s uses API version %s; skipped", name, flag.api_version)
                continue
            errors = flag.validate()
            if errors:
                log.warning("Default flag %s is invalid: %s", name, errors)
                continue
            with self.storage.transaction():
                flag.save()
                self.save_roles(flag)
            installed.append(name)
        if installed:
            log.info("Installed default flags: %s", ", ".join(installed))
        return installed

    def save_roles(self, flag: BaseFlag, old_name: str = None):
        """Store flag.roles as role permissions, dropping those of a previous machine name."""
        if old_name and old_name != flag.name:
            self.storage.revoke_permissions([f"flag {old_name}", f"unflag {old_name}"])
        for action in ("flag", "unflag"):
            permission = f"{action} {flag.name}"
            granted = set(flag.roles.get(action) or [])
            for role in set(self.storage.roles_with_permission(permission)) - granted:
                self.storage.set_role_permissions(role, {permission: False})
            for role in granted:
                self.storage.set_role_permissions(role, {permission: True})
        self.reset_static("permissions")

    def get_permissions(self) -> dict:
        permissions = {}
        for flag in self.get_flags().values():
            permissions.update(flag.get_permissions())
        return permissions

    # ---------- Accounts and sessions ----------

    def get_sid(self, uid: int = None, create: bool = False) -> str:
        """Session id for anonymous flaggings; "" for signed-in users."""
        uid = self.current_account.uid if uid is None else uid
        if uid == 0 and ANONYMOUS_FLAGGING:
            return self.session.ensure_sid() if create else self.session.sid
        return ""

    def user_access(self, permission: str, account: Account = None) -> bool:
        account = account or self.current_account
        if account.is_admin:
            return True
        cache = self.static("permissions")
        if account.roles not in cache:
            cache[account.roles] = self.storage.permissions_for_roles(sorted(account.roles))
        return permission in cache[account.roles]

    def link_token(self, flag_name: str, entity_id, account: Account = None) -> str:
        """Token for an action link. Anonymous visitors get their own session first."""
        account = account or self.current_account
        seed = account.uid if not account.is_anonymous else self.get_sid(0, create=True)
        return get_token(flag_name, entity_id, seed)

    def check_link_token(self, token: str, flag_name: str, entity_id) -> bool:
        account = self.current_account
        seed = account.uid if not account.is_anonymous else self.get_sid(0)
        return valid_token(token, flag_name, entity_id, seed)

    # ---------- Entities ----------

    def load_entity(self, entity_type: str, entity_id) -> Optional[Entity]:
        row = self.storage.load_entity(entity_type, entity_id)
        return Entity.from_row(row) if row else None

    def fetch_entity(self, flag: BaseFlag, entity_id, object_to_remember=None):
        cache = self.static("entities")
        key = (flag.entity_type, entity_id)
        if object_to_remember is not None:
            cache[key] = object_to_remember
        if key not in cache:
            cache[key] = flag._load_entity(entity_id)
        return cache[key]

    # ---------- Flagging state ----------

    def flag(self, action: str, flag_name: str, entity_id, account: Account = None,
             skip_permission_check: bool = False) -> bool:
        flag = self.get_flag(flag_name)
        if flag is None:
            log.warning("Attempt to %s unknown flag %s", action, flag_name)
            return False
        return flag.flag(action, entity_id, account, skip_permission_check)

    def get_counts(self, entity_type: str, entity_id) -> dict[str, int]:
        cache = self.static("counts")
        key = (entity_type, entity_id)
        if key not in cache:
            cache[key] = {row["flag_name"]: row["count"]
                          for row in self.storage.entity_counts(entity_type, entity_id)}
        return cache[key]

    def get_user_flags(self, entity_type: str, entity_id=None, uid: int = None,
                       sid: str = None) -> dict:
        """Flagging records of a user, plus global ones.

        With an entity id: {flag_name: record}. Without: {flag_name: {entity_id: record}}.
        """
        uid = self.current_account.uid if uid is None else uid
        sid = self.get_sid(uid) if sid is None else sid
        cache = self.static("user_flags")
        key = (entity_type, entity_id, uid, sid)
        if key in cache:
            return cache[key]

        flags_by_fid = {flag.fid: flag for flag in self.get_flags().values()}
        result = {}
        for row in self.storage.user_flaggings(entity_type, entity_id, uid, sid):
            flag = flags_by_fid.get(row["fid"])
            if flag is None:
                continue
            if flag.is_global:
                if row["uid"] != 0 or row["sid"] != "":
                    continue
            elif row["uid"] != uid or row["sid"] != sid:
                continue
            if entity_id is not None:
                result[flag.name] = row
            else:
                result.setdefault(flag.name, {})[row["entity_id"]] = row
        cache[key] = result
        return result

    def get_entity_flags(self, entity_type: str, entity_id, flag_name: str = None) -> list[dict]:
        """Who flagged an entity, newest first."""
        cache = self.static("entity_flags")
        key = (entity_type, entity_id, flag_name)
        if key not in cache:
            fid = None
            if flag_name is not None:
                flag = self.get_flag(flag_name)
                if flag is None:
                    return []
                fid = flag.fid
            cache[key] = self.storage.entity_flaggings(entity_type, entity_id, fid)
        return cache[key]

    def reset_flag(self, flag: BaseFlag, entity_id=None) -> int:
        """Remove every flagging of a flag, or of one entity. Returns the number removed."""
        rows = self.storage.flaggings_for_reset(flag.fid, entity_id)
        hooks.invoke_all("flag_reset", flag, entity_id, rows)
        with self.storage.transaction():
            self.storage.delete_flaggings(flag.fid, entity_id)
            self.storage.delete_counts(flag.fid, entity_id)
        self.reset_static("counts", "user_flags", "entity_flags")
        log.info("Reset flag %s (entity %s): %d flaggings removed", flag.name, entity_id, len(rows))
        return len(rows)

    def build_javascript_info(self, flag: BaseFlag, entity_id, action: str,
                              destination: str = None) -> dict:
        """Response data for a JavaScript toggle after a successful action."""
        new_action = "unflag" if action == "flag" else "flag"
        info = {
            "status": True,
            "newLink": str(flag.theme(new_action, entity_id, after_flagging=True,
                                      destination=destination)),
            "flagSuccess": True,
            "entityId": entity_id,
            "flagName": flag.name,
            "flagStatus": "flagged" if action == "flag" else "unflagged",
            "count": flag.get_count(entity_id),
            "message": str(flag.get_label(f"{action}_message", entity_id) or ""),
        }
        hooks.alter("flag_javascript_info_alter", info, flag)
        return info
