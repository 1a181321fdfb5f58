"""
Entity types that flags can be attached to.

Each entity type declares its bundles (sub-types) and view modes. The rows
themselves come from storage: users from platform_users, everything else
from content_entities.
"""
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class EntityTypeInfo:
    id: str
    label: str
    bundles: dict = field(default_factory=dict)
    view_modes: dict = field(default_factory=lambda: {"full": "Full content", "teaser": "Teaser"})
    fieldable: bool = True


@dataclass
class Entity:
    entity_type: str
    entity_id: int
    bundle: str = ""
    label: str = ""
    url: Optional[str] = None
    uid: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "Entity":
        return cls(
            entity_type=row["entity_type"],
            entity_id=int(row["entity_id"]),
            bundle=row.get("bundle") or "",
            label=row.get("label") or "",
            url=row.get("url"),
            uid=int(row.get("uid") or 0),
        )


_entity_types: dict[str, EntityTypeInfo] = {}


def register_entity_type(info: EntityTypeInfo) -> EntityTypeInfo:
    _entity_types[info.id] = info
    return info


def get_entity_type(entity_type: str) -> Optional[EntityTypeInfo]:
    return _entity_types.get(entity_type)


def get_entity_types() -> dict[str, EntityTypeInfo]:
    return dict(_entity_types)


register_entity_type(EntityTypeInfo(
    id="node",
    label="Content",
    bundles={"article": "Article", "page": "Basic page"},
))
register_entity_type(EntityTypeInfo(
    id="comment",
    label="Comment",
    bundles={"comment": "Comment"},
    view_modes={"full": "Full comment"},
))
register_entity_type(EntityTypeInfo(
    id="user",
    label="User",
    bundles={"user": "User"},
    view_modes={"full": "User account"},
    fieldable=False,
))
