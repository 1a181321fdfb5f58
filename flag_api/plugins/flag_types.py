"""
Flag type plugins.

A flag type binds a handler class to an entity type. Plugins register with
the @flag_type decorator; a plugin with derive=True expands into one plugin
per registered entity type, e.g. "flagtype_entity:node".
"""
from typing import Optional

from .. import hooks
from ..entities import get_entity_types


# Entity types that have their own plugin or cannot be flagged.
IGNORED_DERIVATIVES = frozenset({"flag", "flagging", "user"})


class FlagTypePluginManager:

    def __init__(self):
        self._plugins: dict[str, dict] = {}

    def register(self, plugin_id: str, title: str, handler_class, entity_type: str = None,
                 derive: bool = False):
        self._plugins[plugin_id] = {
            "id": plugin_id,
            "title": title,
            "entity_type": entity_type,
            "class": handler_class,
            "derive": derive,
        }

    def _derivatives(self, base: dict) -> dict:
        derivatives = {}
        for entity_type, info in get_entity_types().items():
            if entity_type in IGNORED_DERIVATIVES:
                continue
            plugin_id = f"{base['id']}:{entity_type}"
            derivatives[plugin_id] = {
                **base,
                "id": plugin_id,
                "title": info.label,
                "entity_type": entity_type,
                "derive": False,
            }
        return derivatives

    def get_definitions(self) -> dict:
        definitions = {}
        for plugin_id, definition in self._plugins.items():
            if definition["derive"]:
                definitions.update(self._derivatives(definition))
            else:
                definitions[plugin_id] = dict(definition)
        hooks.alter("flag_type_info_alter", definitions)
        return definitions

    def get_definition(self, plugin_id: str) -> Optional[dict]:
        return self.get_definitions().get(plugin_id)

    def get_all_flag_types(self) -> dict:
        """Plugin id -> title, ordered by title."""
        definitions = self.get_definitions()
        pairs = sorted(((d["title"], pid) for pid, d in definitions.items()))
        return {pid: title for title, pid in pairs}

    def definition_for_entity_type(self, entity_type: str) -> Optional[dict]:
        for definition in self.get_definitions().values():
            if definition["entity_type"] == entity_type:
                return definition
        return None


manager = FlagTypePluginManager()


def flag_type(plugin_id: str, title: str, entity_type: str = None, derive: bool = False):
    """Class decorator registering a flag handler as a flag type plugin."""
    def decorator(cls):
        manager.register(plugin_id, title, cls, entity_type=entity_type, derive=derive)
        return cls
    return decorator
