"""In-memory schema model of the source API.

The model is deliberately smaller than a full GraphQL schema: it keeps only
the object types the mapping declares, and for each field just what the
classifier, serializer and augmenter need (scalar vs. reference, nullability,
list-ness). It is built once per run and never mutated.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterator

from pydantic import BaseModel, Field, model_validator


def predicate_name(type_name: str, field_name: str) -> str:
    """Target predicate for a field, following Dgraph's ``Type.field`` convention."""
    return f"{type_name}.{field_name}"


class FieldKind(str, Enum):
    """Whether a field holds a value or points at another declared type."""

    SCALAR = "scalar"
    REFERENCE = "reference"


class SchemaField(BaseModel):
    """One field of a source type.

    Attributes:
        name: Field name as exposed by the source API.
        kind: Scalar (including enums) or reference to another declared type.
        type_name: GraphQL named type (e.g. "String", "Package").
        nullable: False when the field is declared non-null.
        is_list: True for list-valued fields.
    """

    model_config = {"frozen": True}

    name: str
    kind: FieldKind
    type_name: str
    nullable: bool = True
    is_list: bool = False

    @property
    def is_reference(self) -> bool:
        return self.kind == FieldKind.REFERENCE

    @property
    def required(self) -> bool:
        return not self.nullable


class SchemaType(BaseModel):
    """A source type with its ordered fields and declared natural key."""

    model_config = {"frozen": True}

    name: str
    fields: tuple[SchemaField, ...] = ()
    natural_key: tuple[str, ...] = Field(default=(), description="Ordered natural-key field names")

    @model_validator(mode="after")
    def check_unique_field_names(self) -> "SchemaType":
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field names on type {self.name}")
        return self

    def field(self, name: str) -> SchemaField | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def has_field(self, name: str) -> bool:
        return self.field(name) is not None

    @property
    def required_fields(self) -> tuple[SchemaField, ...]:
        return tuple(f for f in self.fields if f.required)

    @property
    def reference_fields(self) -> tuple[SchemaField, ...]:
        return tuple(f for f in self.fields if f.is_reference)


class SchemaModel(BaseModel):
    """All declared source types, in declaration order.

    Attributes:
        types: Mapping of type name to SchemaType.
        source: Where the schema came from ("introspection" or a file path).
    """

    model_config = {"frozen": True}

    types: dict[str, SchemaType]
    source: str = "static"

    @model_validator(mode="after")
    def check_references_resolve(self) -> "SchemaModel":
        for type_name, schema_type in self.types.items():
            if schema_type.name != type_name:
                raise ValueError(f"Type registered as {type_name} is named {schema_type.name}")
            for f in schema_type.reference_fields:
                if f.type_name not in self.types:
                    raise ValueError(f"{type_name}.{f.name} references undeclared type {f.type_name}")
        return self

    def __getitem__(self, type_name: str) -> SchemaType:
        return self.types[type_name]

    def __contains__(self, type_name: object) -> bool:
        return type_name in self.types

    def iter_types(self) -> Iterator[SchemaType]:
        return iter(self.types.values())

    def __len__(self) -> int:
        return len(self.types)

    @property
    def type_names(self) -> tuple[str, ...]:
        return tuple(self.types)
