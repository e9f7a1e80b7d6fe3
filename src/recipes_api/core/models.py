"""Core domain models for the recipes service.

A recipe carries identity (``id``, ``source_id``) and a ``version``.
Every other field is payload: kept verbatim, never interpreted here.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

IDENTITY_FIELDS = frozenset({"id", "_id"})


class Recipe(BaseModel):
    """A stored recipe record."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: int | None = None
    source_id: str = Field(min_length=1)
    version: int

    @property
    def payload(self) -> dict[str, Any]:
        """Fields outside identity and version."""
        return dict(self.model_extra or {})

    def with_id(self, recipe_id: int) -> Recipe:
        return self.model_copy(update={"id": recipe_id})

    def to_document(self) -> dict[str, Any]:
        """JSON-compatible dict including payload fields."""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> Recipe:
        return cls.model_validate(document)


def normalise(record: Recipe | dict[str, Any] | None) -> dict[str, Any] | None:
    """Drop identity fields so records can be compared across stores."""
    if record is None:
        return None
    data = record.to_document() if isinstance(record, Recipe) else dict(record)
    return {k: v for k, v in data.items() if k not in IDENTITY_FIELDS}
