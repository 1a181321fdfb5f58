"""
Base flag handler.

A handler object is one flag definition plus the behaviour for the entity
type it targets. The class to instantiate depends on the flag's entity_type
column, so handlers are built through the factory methods below rather than
constructed directly:

- BaseFlag.factory_by_row(): from a stored flag row.
- BaseFlag.factory_by_array(): from a definition dict (code defaults, imports).
- BaseFlag.factory_by_entity_type(): an empty flag for a new definition.

Handlers hold a reference to the request's FlagService, which owns the
storage, the acting session and the request-scoped caches.
"""
import logging
import re
from typing import Optional

from markupsafe import Markup
from psycopg2.errors import UniqueViolation

from .. import hooks
from ..config import ANONYMOUS_FLAGGING, PAGE_CACHE_ENABLED, FLAG_API_VERSION, FLAG_ADMIN_PATH
from ..cookies import FlagCookieStorage
from ..labels import has_tokens, replace_tokens, sanitize
from ..plugins.link_types import manager as link_type_manager

log = logging.getLogger("flag_api.handlers")

NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")
NAME_MAX_LENGTH = 32
ACTIONS = ("flag", "unflag")

# Definition keys stored as handler attributes; everything else is an option.
_ATTRIBUTES = ("fid", "entity_type", "name", "title", "types", "roles", "module",
               "api_version", "status", "locked")


class BaseFlag:
    broken = False

    def __init__(self, service=None, entity_type: str = None):
        self.service = service
        self.plugin_id: Optional[str] = None
        # None until the flag is saved.
        self.fid: Optional[int] = None
        self.entity_type = entity_type
        self.name = ""
        self.title = ""
        # One shared state for all users instead of one per user.
        self.is_global = False
        # Bundles the flag applies to; empty means all of them.
        self.types: list = []
        self.roles = {"flag": [], "unflag": []}
        self.errors: dict = {}
        self.module: Optional[str] = None
        self.api_version: Optional[int] = None
        self.status = True
        self.locked: dict = {}
        self.is_new = False
        self.settings: dict = {}
        self.construct()

    # ---------- Factories ----------

    @classmethod
    def factory_by_row(cls, row: dict, service=None) -> "BaseFlag":
        from .factory import create_handler

        flag = create_handler(row["entity_type"], service)
        flag.fid = row["fid"]
        flag.name = row["name"]
        flag.title = row.get("title") or ""
        flag.is_global = bool(row.get("global"))
        stored = dict(row.get("options") or {})
        if "link_type" in stored:
            flag.settings["link_type"] = stored["link_type"]
        flag.settings = {**flag.options(), **stored}
        flag.types = list(row.get("types") or [])
        return flag

    @classmethod
    def factory_by_array(cls, config: dict, service=None) -> "BaseFlag":
        from .factory import create_handler

        config = dict(config)
        config.setdefault("entity_type", None)
        flag = create_handler(config["entity_type"], service)
        if "link_type" in config:
            flag.settings["link_type"] = config["link_type"]
            flag.construct()
        flag._apply(config)
        if isinstance(config.get("locked"), list):
            flag.locked = {key: key for key in config["locked"]}
        return flag

    @classmethod
    def factory_by_entity_type(cls, entity_type: str, service=None) -> "BaseFlag":
        from .factory import create_handler

        return create_handler(entity_type, service)

    def _apply(self, values: dict):
        for key, value in values.items():
            if key in ("global", "is_global"):
                self.is_global = bool(value)
            elif key == "options" and isinstance(value, dict):
                self.settings.update(value)
            elif key in _ATTRIBUTES:
                setattr(self, key, value)
            else:
                self.settings[key] = value

    # ---------- Options ----------

    def options(self) -> dict:
        """Option names this flag supports, with their defaults."""
        options = {
            "flag_short": "",
            "flag_long": "",
            "flag_message": "",
            "unflag_short": "",
            "unflag_long": "",
            "unflag_message": "",
            "unflag_denied_text": "",
            "link_type": "toggle",
            "weight": 0,
        }
        options.update(self.get_link_type().default_configuration())
        hooks.alter("flag_options_alter", options, self)
        return options

    def construct(self):
        """Load the default options, keeping values already set."""
        self.settings = {**self.options(), **self.settings}

    def form_input(self, values: dict):
        """Update the flag with values submitted by the admin form."""
        self._apply(values)
        self.types = [t for t in self.types if t]
        if self.service is not None:
            self.service.reset_static("titles")

    def get_link_type(self):
        link_type = self.settings.get("link_type")
        plugin = link_type_manager.create_instance(link_type)
        keys = plugin.default_configuration().keys()
        plugin.set_configuration({k: self.settings[k] for k in keys if k in self.settings})
        return plugin

    def get_stored_options(self) -> dict:
        return {option: self.settings.get(option, default)
                for option, default in self.options().items()}

    # ---------- Validation ----------

    def validate(self) -> dict:
        """Errors keyed by field, each a list of {"error", "message"} dicts."""
        errors = {}
        for part in (self.validate_name(), self.validate_access(), self.validate_link_type()):
            for field, messages in part.items():
                errors.setdefault(field, []).extend(messages)
        return errors

    def validate_name(self) -> dict:
        errors = {}
        if not NAME_PATTERN.match(self.name or ""):
            errors.setdefault("name", []).append({
                "error": "flag_name_characters",
                "message": "The flag name may only contain lowercase letters, underscores, and numbers.",
            })
        if len(self.name or "") > NAME_MAX_LENGTH:
            errors.setdefault("name", []).append({
                "error": "flag_name_length",
                "message": f"The flag name may be up to {NAME_MAX_LENGTH} characters long.",
            })
        existing = self.service.get_flag(self.name) if self.service is not None else None
        if existing is not None and (self.fid is None or existing.fid != self.fid):
            errors.setdefault("name", []).append({
                "error": "flag_name_unique",
                "message": "Flag names must be unique. This flag name is already in use.",
            })
        return errors

    def validate_access(self) -> dict:
        errors = {}
        flag_roles = set(self.roles.get("flag") or [])
        unflag_roles = set(self.roles.get("unflag") or [])
        if not self.settings.get("unflag_denied_text") and flag_roles - unflag_roles:
            errors["unflag_denied_text"] = [{
                "error": "flag_denied_text_required",
                "message": 'The "Unflag not allowed text" is required if any user roles '
                           'are not allowed to unflag.',
            }]
        if unflag_roles - flag_roles:
            errors["roles"] = [{
                "error": "flag_roles_unflag",
                "message": "Any user role that has the ability to unflag must also have "
                           "the ability to flag.",
            }]
        return errors

    def validate_link_type(self) -> dict:
        if not link_type_manager.has(self.settings.get("link_type")):
            return {"link_type": [{
                "error": "flag_link_type_unknown",
                "message": f"Unknown link type {self.settings.get('link_type')!r}.",
            }]}
        return self.get_link_type().validate_configuration(self.settings)

    # ---------- Roles and permissions ----------

    def fetch_roles(self):
        """Load the roles holding this flag's permissions into self.roles."""
        for action in ACTIONS:
            self.roles[action] = self.service.storage.roles_with_permission(f"{action} {self.name}")

    def get_permissions(self) -> dict:
        return {
            f"flag {self.name}": {"title": f"Flag {self.title}"},
            f"unflag {self.name}": {"title": f"Unflag {self.title}"},
        }

    # ---------- Entities ----------

    def fetch_entity(self, entity_id, object_to_remember=None):
        return self.service.fetch_entity(self, entity_id, object_to_remember)

    def _load_entity(self, entity_id):
        return None

    def remember_entity(self, entity_id, entity):
        """Cache an entity that storage cannot load yet."""
        self.fetch_entity(entity_id, entity)

    def get_entity_id(self, entity):
        return getattr(entity, "entity_id", None)

    def applies_to_entity(self, entity) -> bool:
        return False

    def applies_to_entity_id(self, entity_id) -> bool:
        return self.applies_to_entity(self.fetch_entity(entity_id))

    def access_entity_enabled(self, entity_type: str, content_subtype: str = None) -> bool:
        if self.entity_type != entity_type:
            return False
        if content_subtype is None or not self.types:
            return True
        return content_subtype in self.types

    def shows_in_entity_links(self, view_mode: str) -> bool:
        return False

    # ---------- Access control ----------

    def user_access(self, action: str = "flag", account=None) -> bool:
        """Whether the account holds the basic permission to flag or unflag."""
        account = account or self.service.current_account
        if account.is_anonymous and not ANONYMOUS_FLAGGING:
            return False
        return self.service.user_access(f"{action} {self.name}", account)

    def access(self, entity_id, action: str = None, account=None) -> bool:
        """Whether the account may flag or unflag the entity.

        Subclasses refine this through type_access(). Hook implementations
        of flag_access have the last word: any False denies, otherwise any
        True grants even without the permission.
        """
        account = account or self.service.current_account

        if entity_id is not None and not self.applies_to_entity_id(entity_id):
            return False

        if action is None:
            sid = self.service.get_sid(account.uid)
            action = "unflag" if self.is_flagged(entity_id, account.uid, sid) else "flag"

        access = self.user_access(action, account)

        child_access = self.type_access(entity_id, action, account)
        if child_access is not None:
            access = child_access

        module_access = hooks.invoke_all("flag_access", self, entity_id, action, account)
        if any(result is False for result in module_access):
            access = False
        elif any(result is True for result in module_access):
            access = True

        return access

    def access_multiple(self, entity_ids: dict, account=None) -> dict:
        """Access for many entities at once.

        entity_ids maps entity id -> action ("flag" or "unflag").
        """
        account = account or self.service.current_account
        access = {}
        for entity_id, action in entity_ids.items():
            access[entity_id] = self.user_access(action, account)

        for entity_id, entity_access in (self.type_access_multiple(entity_ids, account) or {}).items():
            if entity_access is not None:
                access[entity_id] = entity_access

        for module_access in hooks.invoke_all("flag_access_multiple", self, entity_ids, account):
            for entity_id, entity_access in (module_access or {}).items():
                if entity_access is not None:
                    access[entity_id] = entity_access

        return access

    def type_access(self, entity_id, action: str, account) -> Optional[bool]:
        """False to deny, None for no opinion. Never True."""
        return None

    def type_access_multiple(self, entity_ids: dict, account) -> dict:
        return {}

    def uses_anonymous_cookies(self) -> bool:
        return self.service.current_account.is_anonymous and PAGE_CACHE_ENABLED

    # ---------- Flagging ----------

    def flag(self, action: str, entity_id, account=None, skip_permission_check: bool = False,
             flagging: dict = None) -> bool:
        """Flag or unflag an entity.

        Returns False and leaves messages in self.errors when access is
        denied, the flag does not apply, a flag_validate hook objects, or an
        anonymous account has no session. Exceptions raised while writing
        roll the transaction back and propagate.
        """
        account = account or self.service.current_account
        if account is None:
            return False
        self.errors = {}

        if not skip_permission_check:
            if not self.access(entity_id, action, account):
                self.errors["access-denied"] = "You are not allowed to flag, or unflag, this content."
                return False
        elif not self.applies_to_entity_id(entity_id):
            self.errors["entity-type"] = "This flag does not apply to this entity type."
            return False

        errors = hooks.invoke_all_merged("flag_validate", action, self, entity_id, account,
                                         skip_permission_check, flagging)
        if errors:
            self.errors = errors
            return False

        # Code running after us must not see stale counts or flaggings.
        self.service.reset_static("counts", "user_flags", "entity_flags")

        uid = 0 if self.is_global else account.uid
        if self.is_global:
            sid = ""
        else:
            sid = self.service.get_sid(uid, create=True)
            if not sid and account.is_anonymous:
                self.errors["session"] = "Internal error: You are anonymous but you have no session ID."
                return False

        if flagging is not None:
            flagging["uid"] = uid
            flagging["sid"] = sid

        existing_flagging_id = self._is_flagged(entity_id, uid, sid)
        storage = self.service.storage

        if action == "unflag":
            if self.uses_anonymous_cookies():
                self._unflag_anonymous(entity_id)
            if existing_flagging_id:
                try:
                    with storage.transaction():
                        # A concurrent unflag may have removed it since the lookup.
                        if storage.lock_flagging(existing_flagging_id):
                            if flagging is None:
                                flagging = storage.load_flagging(existing_flagging_id)
                            # Count first so hook implementations see accurate data.
                            self._decrease_count(entity_id)
                            hooks.invoke_all("flag_unflag", self, entity_id, account, flagging)
                            self._unflag(entity_id, existing_flagging_id)
                except Exception:
                    log.exception("Unflagging %s on %s %s failed", self.name, self.entity_type, entity_id)
                    raise
        elif action == "flag":
            if self.uses_anonymous_cookies():
                self._flag_anonymous(entity_id)
            if not existing_flagging_id:
                if flagging is None:
                    flagging = self.new_flagging(entity_id, uid, sid)
                try:
                    with storage.transaction():
                        flagging["flagging_id"] = self._flag(entity_id, uid, sid)
                        self._increase_count(entity_id)
                        hooks.invoke_all("flag_flag", self, entity_id, account, flagging)
                except UniqueViolation:
                    # Flagged by a concurrent request after the lookup; nothing left to do.
                    log.info("%s on %s %s already flagged by uid %s",
                             self.name, self.entity_type, entity_id, uid)
                except Exception:
                    log.exception("Flagging %s on %s %s failed", self.name, self.entity_type, entity_id)
                    raise
            elif flagging is not None and flagging.get("flagging_id"):
                # Already flagged; an edited flagging only needs its record refreshed.
                self._update_flagging(flagging)
        else:
            self.errors["action"] = f"Unknown action {action!r}."
            return False

        log.info("%s %s on %s %s by uid %s", action, self.name, self.entity_type, entity_id, account.uid)
        return True

    def new_flagging(self, entity_id=None, uid: int = None, sid: str = None) -> dict:
        return {
            "flagging_id": None,
            "flag_name": self.name,
            "entity_id": entity_id,
            "uid": uid,
            "sid": sid,
        }

    def _is_flagged(self, entity_id, uid: int, sid: str) -> Optional[int]:
        """Uncached lookup of the flagging id, or None."""
        return self.service.storage.find_flagging_id(self.fid, entity_id, uid, sid)

    def _flag(self, entity_id, uid: int, sid: str) -> int:
        return self.service.storage.insert_flagging(
            self.fid, self.entity_type, entity_id, uid, sid, self.service.request_time)

    def _unflag(self, entity_id, flagging_id: int):
        self.service.storage.delete_flagging(flagging_id)

    def _update_flagging(self, flagging: dict):
        self.service.storage.update_flagging(flagging["flagging_id"], self.service.request_time)
        self.service.reset_static("entity_flags")

    def _increase_count(self, entity_id, number: int = 1):
        self.service.storage.increase_count(
            self.fid, self.entity_type, entity_id, number, self.service.request_time)

    def _decrease_count(self, entity_id, number: int = 1):
        self.service.storage.decrease_count(self.fid, entity_id, number, self.service.request_time)

    def _flag_anonymous(self, entity_id):
        FlagCookieStorage.factory(self, self.service.session).flag(entity_id)

    def _unflag_anonymous(self, entity_id):
        FlagCookieStorage.factory(self, self.service.session).unflag(entity_id)

    # ---------- State lookups ----------

    def is_flagged(self, entity_id, uid: int = None, sid: str = None) -> bool:
        return bool(self.get_flagging_record(entity_id, uid, sid))

    def get_flagging_record(self, entity_id, uid: int = None, sid: str = None) -> Optional[dict]:
        """The stored flagging row for the user (cached per request), or None."""
        if self.is_global:
            uid, sid = 0, ""
        else:
            uid = self.service.current_account.uid if uid is None else uid
            sid = self.service.get_sid(uid) if sid is None else sid
        user_flags = self.service.get_user_flags(self.entity_type, entity_id, uid, sid)
        return user_flags.get(self.name)

    def get_flagging(self, entity_id, uid: int = None, sid: str = None) -> Optional[dict]:
        record = self.get_flagging_record(entity_id, uid, sid)
        if record:
            return self.service.storage.load_flagging(record["flagging_id"])
        return None

    def get_count(self, entity_id) -> int:
        return self.service.get_counts(self.entity_type, entity_id).get(self.name, 0)

    def get_user_count(self, uid: int, sid: str = None) -> int:
        """Items the user has flagged. Pass uid 0 for global flags."""
        if sid is None:
            sid = self.service.get_sid(uid)
        return self.service.storage.count_user_flaggings(self.fid, uid, sid)

    # ---------- Labels ----------

    def get_label(self, label: str, entity_id=None) -> Optional[Markup]:
        value = self.title if label == "title" else self.settings.get(label)
        if value is None:
            return None
        value = str(value)
        if has_tokens(value):
            value = self.replace_tokens(value, {}, entity_id)
        return sanitize(value)

    def replace_tokens(self, label: str, contexts: dict, entity_id) -> str:
        contexts = dict(contexts)
        contexts["flag"] = {
            "name": self.name,
            "title": self.title,
            "count": self.get_count(entity_id) if entity_id is not None else None,
        }
        if "[flagging:" in label and entity_id is not None:
            flagging = self.get_flagging(entity_id)
            if flagging:
                contexts["flagging"] = {
                    "id": flagging["flagging_id"],
                    "uid": flagging["uid"],
                    "timestamp": flagging["timestamp"],
                }
        return replace_tokens(label, contexts)

    def get_labels_token_types(self) -> list[str]:
        return ["flag", "flagging"]

    def get_title(self, entity_id=None, reset: bool = False):
        titles = self.service.static("titles")
        if reset:
            titles.clear()
        slot = (self.fid, int(entity_id or 0))
        if slot not in titles:
            titles[slot] = self.get_label("title", entity_id)
        return titles[slot]

    def get_flag_action(self, entity_id) -> dict:
        """Token data describing a flagging, used by notification actions."""
        return {"flag": self.name, "entity_type": self.entity_type, "entity_id": entity_id}

    def get_errors(self) -> dict:
        return self.errors

    # ---------- Persistence ----------

    def save(self):
        if self.fid is not None:
            self.update()
            self.is_new = False
        else:
            self.insert()
            self.is_new = True
        self.service.reset_static("flags", "titles")
        log.info("Flag %s has been %s", self.name, "added" if self.is_new else "updated")

    def update(self):
        self.service.storage.update_flag(
            self.fid, self.name, self.title, int(self.is_global),
            self.get_stored_options(), list(self.types))

    def insert(self):
        self.fid = self.service.storage.insert_flag(
            self.entity_type, self.name, self.title, int(self.is_global),
            self.get_stored_options(), list(self.types))

    def delete(self):
        storage = self.service.storage
        with storage.transaction():
            storage.delete_flag(self.fid)
            storage.revoke_permissions(list(self.get_permissions()))
        hooks.invoke_all("flag_delete", self)
        self.service.reset_static()
        log.info("Flag %s has been deleted", self.name)

    # ---------- Flags defined in code ----------

    def is_compatible(self) -> bool:
        """Stored flags are always compatible; code definitions must match the API version."""
        if self.fid is not None:
            return True
        if self.api_version is None:
            self.api_version = 1
        return self.api_version == FLAG_API_VERSION

    def find_default_flag(self) -> Optional["BaseFlag"]:
        """The code definition this stored flag overrides, if any."""
        if self.fid:
            return self.service.get_default_flags(include_disabled=True).get(self.name)
        return None

    def revert(self) -> Optional[bool]:
        """Overwrite this stored flag with its code definition.

        None when nothing is overridden, False when the definition is incompatible.
        """
        default_flag = self.find_default_flag()
        if default_flag is None:
            return None
        if not default_flag.is_compatible():
            return False
        default_flag.fid = self.fid
        default_flag.save()
        return True

    def _set_default_status(self, enabled: bool):
        if not self.module:
            return
        storage = self.service.storage
        flag_status = storage.get_variable("flag_default_flag_status", {})
        flag_status[self.name] = enabled
        storage.set_variable("flag_default_flag_status", flag_status)
        self.status = enabled

    def disable(self):
        """Disable a flag provided by a module."""
        self._set_default_status(False)

    def enable(self):
        """Enable a flag provided by a module."""
        self._set_default_status(True)

    def admin_path(self, action: str) -> str:
        if action == "edit":
            return f"{FLAG_ADMIN_PATH}/{self.name}"
        return f"{FLAG_ADMIN_PATH}/{self.name}/{action}"

    # ---------- Rendering ----------

    def theme(self, action: str, entity_id, after_flagging: bool = False, errors: dict = None,
              destination: str = None) -> Markup:
        """HTML for the flag/unflag link.

        For anonymous visitors on cached pages the opposite state is also
        rendered into a <template> so client code can swap it in.
        """
        js_template = Markup("")
        if self.uses_anonymous_cookies() and not after_flagging:
            if self.is_global:
                js_action = "unflag" if action == "flag" else "flag"
            else:
                # Per-user state is unknown to the cached page; start from "flag".
                js_action = "unflag"
                action = "flag"
            js_template = Markup('<template class="flag-template" data-flag="{}_{}">{}</template>').format(
                self.name, entity_id,
                self._render_link(js_action, entity_id, after_flagging, errors, destination))

        return self._render_link(action, entity_id, after_flagging, errors, destination) + js_template

    def _render_link(self, action: str, entity_id, after_flagging: bool, errors: Optional[dict],
                     destination: Optional[str]) -> Markup:
        link_type = self.get_link_type()
        status = "unflagged" if action == "flag" else "flagged"
        css_name = self.name.replace("_", "-")
        wrapper_classes = ["flag-wrapper", f"flag-{css_name}", f"flag-{css_name}-{entity_id}"]

        if action == "unflag" and not self.access(entity_id, "unflag"):
            body = Markup('<span class="flag-unflag-disabled">{}</span>').format(
                self.get_label("unflag_denied_text", entity_id) or "")
        else:
            href = link_type.build_link(
                action, self.name, entity_id, destination=destination,
                token=self.service.link_token(self.name, entity_id))
            classes = link_type.link_classes(action)
            classes.append(status)
            body = Markup('<a href="{}" title="{}" class="{}" rel="nofollow">{}</a>').format(
                href,
                self.get_label(f"{action}_long", entity_id) or "",
                " ".join(classes),
                self.get_label(f"{action}_short", entity_id) or "",
            )
            body += Markup('<span class="flag-throbber">&nbsp;</span>')

        if after_flagging:
            message_label = "flag_message" if action == "unflag" else "unflag_message"
            message = self.get_label(message_label, entity_id)
            if message:
                body += Markup('<span class="flag-message flag-{}-message">{}</span>').format(
                    "flagged" if action == "unflag" else "unflagged", message)
        for error in (errors or {}).values():
            body += Markup('<span class="flag-message flag-failure-message">{}</span>').format(error)

        return Markup('<span class="{}">{}</span>').format(" ".join(wrapper_classes), body)
