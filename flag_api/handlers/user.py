"""
Flag handler for user accounts ("friend", "follow", ...).
"""
from typing import Optional

from ..plugins.flag_types import flag_type
from .entity import EntityFlag


@flag_type("flagtype_user", "Users", entity_type="user")
class UserFlag(EntityFlag):

    def options(self) -> dict:
        options = super().options()
        options.update({
            "show_on_profile": True,
            # "others" stops users from flagging themselves.
            "access_uid": "",
        })
        return options

    def applies_to_entity(self, entity) -> bool:
        # User flags have no bundles.
        return entity is not None and entity.entity_type == "user"

    def type_access(self, entity_id, action: str, account) -> Optional[bool]:
        if entity_id is None:
            return None
        if int(entity_id) == 0:
            return False
        if self.settings.get("access_uid") == "others" and int(entity_id) == account.uid:
            return False
        return None

    def type_access_multiple(self, entity_ids: dict, account) -> dict:
        access = {}
        if 0 in entity_ids:
            access[0] = False
        if self.settings.get("access_uid") == "others" and account.uid in entity_ids:
            access[account.uid] = False
        return access

    def shows_in_entity_links(self, view_mode: str) -> bool:
        return view_mode == "full" and bool(self.settings.get("show_on_profile"))
