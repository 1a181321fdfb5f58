"""
Flag handler for content entities (nodes, comments, ...).
"""
from typing import Optional

from ..plugins.flag_types import flag_type
from .base import BaseFlag


@flag_type("flagtype_entity", "Flag Type Entity", derive=True)
class EntityFlag(BaseFlag):

    def options(self) -> dict:
        options = super().options()
        options.update({
            # View modes on which the link is shown with the entity links.
            "show_in_links": {},
            # Show the link as its own pseudo-field.
            "show_as_field": False,
            # Add a checkbox for the flag to the entity edit form.
            "show_on_form": False,
            # "own" or "others": restrict flagging by entity authorship.
            "access_author": "",
            "show_contextual_link": False,
        })
        return options

    def _load_entity(self, entity_id):
        return self.service.load_entity(self.entity_type, entity_id)

    def applies_to_entity(self, entity) -> bool:
        return entity is not None and self.access_entity_enabled(entity.entity_type, entity.bundle)

    def _author_access(self, entity, account) -> Optional[bool]:
        access_author = self.settings.get("access_author")
        if not access_author or entity is None:
            return None
        if access_author == "own" and entity.uid != account.uid:
            return False
        if access_author == "others" and entity.uid == account.uid:
            return False
        return None

    def type_access(self, entity_id, action: str, account) -> Optional[bool]:
        if entity_id is None:
            return None
        return self._author_access(self.fetch_entity(entity_id), account)

    def type_access_multiple(self, entity_ids: dict, account) -> dict:
        access = {}
        if not self.settings.get("access_author"):
            return access
        for entity_id in entity_ids:
            entity_access = self._author_access(self.fetch_entity(entity_id), account)
            if entity_access is not None:
                access[entity_id] = entity_access
        return access

    def shows_in_entity_links(self, view_mode: str) -> bool:
        return bool((self.settings.get("show_in_links") or {}).get(view_mode))

    def replace_tokens(self, label: str, contexts: dict, entity_id) -> str:
        if entity_id is not None:
            entity = self.fetch_entity(entity_id)
            if entity is not None:
                contexts = {**contexts, self.entity_type: {
                    "id": entity.entity_id,
                    "label": entity.label,
                    "url": entity.url,
                    "bundle": entity.bundle,
                    "author": entity.uid,
                }}
        return super().replace_tokens(label, contexts, entity_id)

    def get_labels_token_types(self) -> list[str]:
        return [self.entity_type] + super().get_labels_token_types()

    def get_flag_action(self, entity_id) -> dict:
        flag_action = super().get_flag_action(entity_id)
        entity = self.fetch_entity(entity_id)
        if entity is not None:
            flag_action["content_title"] = entity.label
            flag_action["content_url"] = entity.url
        return flag_action
