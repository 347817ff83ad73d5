"""Partition the schema into Node types and Edge types.

The classification is a strategy table computed once per run: every later
component asks it for a type's role instead of branching on type names.

Rules, applied per type:

- A declared, unambiguous natural key makes the type a **Node**.
- No natural key and at least one required reference field makes the type
  an **Edge**: it only exists to relate other entities.
- Anything else is a **Node without identity**. Such records cannot be
  deduplicated, so they are embedded under the record that references them.

A natural key is ambiguous when it names a field twice, names a field the
type does not have, or names a list or reference field.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, model_validator

from graphetl.schema.models import SchemaModel, SchemaType

logger = logging.getLogger(__name__)


class TypeRole(str, Enum):
    NODE = "node"
    EDGE = "edge"


class Classification(BaseModel):
    """Role of every schema type.

    Attributes:
        roles: Type name -> TypeRole, covering every type exactly once.
        identityless: Node types without a usable natural key.
        ambiguous: Node types whose declared natural key was rejected, with the reason.
    """

    model_config = {"frozen": True}

    roles: dict[str, TypeRole]
    identityless: frozenset[str] = frozenset()
    ambiguous: dict[str, str] = {}

    @model_validator(mode="after")
    def check_identityless_are_nodes(self) -> "Classification":
        for name in self.identityless:
            if self.roles.get(name) != TypeRole.NODE:
                raise ValueError(f"Identity-less type {name} must be a node type")
        return self

    def role(self, type_name: str) -> TypeRole:
        return self.roles[type_name]

    def is_edge(self, type_name: str) -> bool:
        return self.roles[type_name] == TypeRole.EDGE

    def has_identity(self, type_name: str) -> bool:
        """True for keyed Node types, whose records get a synthesized canonical ID."""
        return self.roles[type_name] == TypeRole.NODE and type_name not in self.identityless

    @property
    def node_types(self) -> tuple[str, ...]:
        return tuple(name for name, role in self.roles.items() if role == TypeRole.NODE)

    @property
    def edge_types(self) -> tuple[str, ...]:
        return tuple(name for name, role in self.roles.items() if role == TypeRole.EDGE)


def natural_key_problem(schema_type: SchemaType) -> str | None:
    """Describe why a type's declared natural key is unusable, or None if it is fine."""
    key = schema_type.natural_key
    if not key:
        return None
    if len(set(key)) != len(key):
        return "natural key names a field more than once"
    for name in key:
        f = schema_type.field(name)
        if f is None:
            return f"natural key field '{name}' does not exist"
        if f.is_list:
            return f"natural key field '{name}' is a list"
        if f.is_reference:
            return f"natural key field '{name}' is a reference"
    return None


def classify(model: SchemaModel) -> Classification:
    """Assign a TypeRole to every type of the model. Pure and deterministic."""
    roles: dict[str, TypeRole] = {}
    identityless: set[str] = set()
    ambiguous: dict[str, str] = {}

    for schema_type in model.iter_types():
        name = schema_type.name
        problem = natural_key_problem(schema_type)
        if schema_type.natural_key and problem is None:
            roles[name] = TypeRole.NODE
            continue

        if problem is not None:
            ambiguous[name] = problem
            logger.warning("Type %s: %s; treating it as a node without identity", name, problem)
            roles[name] = TypeRole.NODE
            identityless.add(name)
            continue

        if any(f.is_reference for f in schema_type.required_fields):
            roles[name] = TypeRole.EDGE
        else:
            logger.warning("Type %s has no natural key and no required reference; it will be embedded", name)
            roles[name] = TypeRole.NODE
            identityless.add(name)

    classification = Classification(roles=roles, identityless=frozenset(identityless), ambiguous=ambiguous)
    logger.info(
        "Classified %d types: %d node, %d edge, %d without identity",
        len(roles),
        len(classification.node_types),
        len(classification.edge_types),
        len(identityless),
    )
    return classification
