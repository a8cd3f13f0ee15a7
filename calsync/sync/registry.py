"""Registry of local event-like entity types the sync engine can handle."""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from calsync.config import get_settings
from calsync.database import generic_table_name

# Attendee links of the built-in event types, in lookup order
ATTENDEE_LINKS = ("User", "Contact", "Lead")


@dataclass(frozen=True)
class EntityTypeDef:
    """How one entity type is stored and which optional attributes it has."""

    name: str
    table: str
    is_core: bool
    has_all_day: bool = False
    has_location: bool = False
    has_join_url: bool = False
    has_uid: bool = False
    max_lengths: dict = field(default_factory=lambda: {"name": 255, "location": 255, "uid": 255})

    @property
    def attributes(self) -> tuple:
        """Columns the engine reads and writes."""
        attrs = ["name", "status", "date_start", "date_end", "description", "assigned_user_id"]
        if self.has_all_day:
            attrs += ["date_start_date", "date_end_date", "is_all_day"]
        if self.has_location:
            attrs.append("location")
        if self.has_join_url:
            attrs.append("join_url")
        if self.has_uid:
            attrs.append("uid")
        return tuple(attrs)

    def has_attribute(self, attribute: str) -> bool:
        return attribute in self.attributes

    def max_length(self, attribute: str) -> Optional[int]:
        return self.max_lengths.get(attribute)


CORE_TYPES = (
    EntityTypeDef(
        name="Meeting",
        table="meetings",
        is_core=True,
        has_all_day=True,
        has_location=True,
        has_join_url=True,
        has_uid=True,
    ),
    EntityTypeDef(
        name="Call",
        table="calls",
        is_core=True,
        has_uid=True,
    ),
)


class EntityTypeRegistry:
    """Maps entity type names to their definitions."""

    def __init__(self, generic_types: list[str]):
        self._types: dict[str, EntityTypeDef] = {t.name: t for t in CORE_TYPES}
        for name in generic_types:
            if name in self._types:
                continue
            self._types[name] = EntityTypeDef(
                name=name,
                table=generic_table_name(name),
                is_core=False,
                has_all_day=True,
                has_location=True,
            )

    def get(self, entity_type: str) -> Optional[EntityTypeDef]:
        return self._types.get(entity_type)

    def is_core(self, entity_type: str) -> bool:
        definition = self._types.get(entity_type)
        return bool(definition and definition.is_core)

    def known(self, entity_types: list[str]) -> list[str]:
        """Filter a list down to registered types, preserving order."""
        return [t for t in entity_types if t in self._types]


@lru_cache()
def get_registry() -> EntityTypeRegistry:
    """Registry built from configured generic activity types."""
    return EntityTypeRegistry(get_settings().generic_activity_types)
