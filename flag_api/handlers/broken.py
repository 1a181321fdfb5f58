"""
Placeholder handler for flags whose entity type is no longer available.
"""
from .base import BaseFlag


class BrokenFlag(BaseFlag):
    broken = True

    def applies_to_entity(self, entity) -> bool:
        return False

    def validate(self) -> dict:
        errors = super().validate()
        errors.setdefault("entity_type", []).append({
            "error": "flag_entity_type_unknown",
            "message": f"The entity type {self.entity_type!r} is not available.",
        })
        return errors
