"""
Handler instantiation by entity type.
"""
from ..plugins.flag_types import manager
from .base import BaseFlag
from .broken import BrokenFlag
from . import entity, user  # noqa: F401 -- registers the flag type plugins


def create_handler(entity_type: str, service=None) -> BaseFlag:
    """A fresh handler for the entity type, or a BrokenFlag when no plugin covers it."""
    definition = manager.definition_for_entity_type(entity_type) if entity_type else None
    cls = definition["class"] if definition else BrokenFlag
    flag = cls(service, entity_type=entity_type)
    flag.plugin_id = definition["id"] if definition else None
    return flag
