"""
Action link type plugins.

An action link type decides how the flag/unflag link behaves: a plain
request that reloads the page, a JavaScript toggle, or a confirmation form.
Each type contributes its own option defaults to the flags that use it.
"""
from typing import Optional
from urllib.parse import quote, urlencode

FALLBACK_LINK_TYPE = "normal"


class ActionLinkType:
    plugin_id = ""
    label = ""
    description = ""
    uses_token = True

    def __init__(self, configuration: dict = None):
        self.set_configuration(configuration or {})

    def default_configuration(self) -> dict:
        """Options merged into every flag using this link type."""
        return {}

    def get_configuration(self) -> dict:
        return self.configuration

    def set_configuration(self, configuration: dict):
        self.configuration = {**self.default_configuration(), **configuration}

    def validate_configuration(self, values: dict) -> dict:
        """Errors keyed by option name, in the flag validation format."""
        return {}

    def route(self, action: str, flag_name: str, entity_id) -> str:
        return f"/flag/{quote(action)}/{quote(flag_name)}/{entity_id}"

    def build_link(self, action: str, flag_name: str, entity_id, destination: str = None,
                   token: str = None) -> str:
        query = {}
        if destination:
            query["destination"] = destination
        if token and self.uses_token:
            query["token"] = token
        url = self.route(action, flag_name, entity_id)
        return f"{url}?{urlencode(query)}" if query else url

    def link_classes(self, action: str) -> list[str]:
        return ["flag", f"{action}-action", f"flag-link-{self.plugin_id}"]


class LinkTypePluginManager:

    def __init__(self):
        self._plugins: dict[str, type] = {}

    def register(self, cls):
        self._plugins[cls.plugin_id] = cls
        return cls

    def get_definitions(self) -> dict:
        return {
            pid: {"id": pid, "label": cls.label, "description": cls.description}
            for pid, cls in self._plugins.items()
        }

    def get_all_link_types(self) -> dict:
        return {pid: cls.label for pid, cls in self._plugins.items()}

    def has(self, plugin_id: Optional[str]) -> bool:
        return plugin_id in self._plugins

    def create_instance(self, plugin_id: Optional[str], configuration: dict = None) -> ActionLinkType:
        cls = self._plugins.get(plugin_id) or self._plugins[FALLBACK_LINK_TYPE]
        return cls(configuration)


manager = LinkTypePluginManager()


@manager.register
class ReloadLink(ActionLinkType):
    plugin_id = "normal"
    label = "Normal link"
    description = "A normal non-JavaScript request will be made and the current page will be reloaded."


@manager.register
class ToggleLink(ActionLinkType):
    plugin_id = "toggle"
    label = "JavaScript toggle"
    description = ("An AJAX request will be made and degrades to type \"Normal link\" "
                   "if JavaScript is not available.")

    def link_classes(self, action: str) -> list[str]:
        return super().link_classes(action) + ["flag-toggle"]


@manager.register
class ConfirmLink(ActionLinkType):
    plugin_id = "confirm"
    label = "Confirmation form"
    description = "The user will be taken to a confirmation form on a separate page to confirm the flag."
    uses_token = False

    def default_configuration(self) -> dict:
        return {"flag_confirmation": "", "unflag_confirmation": ""}

    def route(self, action: str, flag_name: str, entity_id) -> str:
        return f"/flag/confirm/{quote(action)}/{quote(flag_name)}/{entity_id}"

    def validate_configuration(self, values: dict) -> dict:
        errors = {}
        if not values.get("flag_confirmation"):
            errors["flag_confirmation"] = [{
                "error": "flag_confirmation_required",
                "message": "A flag confirmation message is required when using the confirmation link type.",
            }]
        if not values.get("unflag_confirmation"):
            errors["unflag_confirmation"] = [{
                "error": "unflag_confirmation_required",
                "message": "An unflag confirmation message is required when using the confirmation link type.",
            }]
        return errors
