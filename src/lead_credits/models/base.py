from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional, Union, get_args, get_origin

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself into a store row
    - Rebuild itself from a store row
    - Provide a backend-agnostic schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class never hits the store for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for an insert.

        Nullable fields are kept so that `IS NULL` filters match freshly
        inserted rows on every backend.
        """
        data = self.model_dump(by_alias=True)
        if data.get(self.primary_key or "id") is None:
            data.pop(self.primary_key or "id", None)
        return data

    @classmethod
    def from_row(cls, row: Optional[Mapping[str, Any]]):
        if row is None:
            return None
        return cls.model_validate(dict(row))

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": cls._is_optional(field.annotation),
                "default": field.default if field.default is not None else None,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _is_optional(annotation: Any) -> bool:
        return get_origin(annotation) is Union and type(None) in get_args(annotation)

    @classmethod
    def _map_type(cls, annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        if cls._is_optional(annotation):
            inner = [a for a in get_args(annotation) if a is not type(None)]
            annotation = inner[0] if len(inner) == 1 else object

        origin: Any = get_origin(annotation)
        if origin in (list, tuple, set):
            return "array"
        if origin is dict:
            return "object"

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"

        # Fallback for datetime, enums, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()


class PaginatedResult(BaseModel):
    items: list[Any] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
