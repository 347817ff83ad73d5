"""Schema acquisition: live introspection first, static schema file second.

Some deployments disable introspection for security reasons, so the static
fallback is a first-class path rather than a test convenience. The fallback
file is either GraphQL SDL (``.graphql``/``.gql``/``.graphqls``) or a saved
introspection result (``.json``, with or without the ``data`` envelope).

Either way the GraphQL schema is reduced to a `SchemaModel` holding only the
object types the mapping declares (or, with an empty mapping, every object
type except the root operation types).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from graphql import (
    GraphQLError,
    GraphQLObjectType,
    GraphQLSchema,
    build_client_schema,
    build_schema,
    get_introspection_query,
    get_named_type,
    is_leaf_type,
    is_list_type,
    is_non_null_type,
)

from graphetl.errors import MappingError, SchemaUnavailableError, SourceError
from graphetl.mapping import SourceMapping
from graphetl.schema.models import FieldKind, SchemaField, SchemaModel, SchemaType
from graphetl.source.client import SourceClient

logger = logging.getLogger(__name__)

SDL_SUFFIXES = (".graphql", ".gql", ".graphqls")


def introspect(client: SourceClient) -> GraphQLSchema:
    """Fetch the schema from the live endpoint via the introspection query."""
    data = client.execute(get_introspection_query(descriptions=False))
    return build_client_schema(data)  # type: ignore[arg-type]


def read_static_schema(path: Path) -> GraphQLSchema:
    """Read an SDL document or a saved introspection result."""
    text = path.read_text()
    if path.suffix.lower() == ".json":
        document: Any = json.loads(text)
        if isinstance(document, dict) and "data" in document:
            document = document["data"]
        return build_client_schema(document)
    return build_schema(text, assume_valid_sdl=True)


def _root_type_names(schema: GraphQLSchema) -> set[str]:
    roots = (schema.query_type, schema.mutation_type, schema.subscription_type)
    return {t.name for t in roots if t is not None}


def _convert_field(owner: str, name: str, field_type: Any, declared: set[str]) -> Optional[SchemaField]:
    nullable = not is_non_null_type(field_type)
    inner = field_type.of_type if is_non_null_type(field_type) else field_type
    named = get_named_type(field_type)
    if is_leaf_type(named):
        kind = FieldKind.SCALAR
    elif named.name in declared:
        kind = FieldKind.REFERENCE
    else:
        logger.debug("Dropping %s.%s: type %s is not declared in the mapping", owner, name, named.name)
        return None
    return SchemaField(
        name=name,
        kind=kind,
        type_name=named.name,
        nullable=nullable,
        is_list=is_list_type(inner),
    )


def to_schema_model(schema: GraphQLSchema, mapping: SourceMapping, source: str) -> SchemaModel:
    """Reduce a GraphQL schema to the declared object types.

    Raises:
        MappingError: If the mapping declares a type that is not an object
            type of the schema.
    """
    roots = _root_type_names(schema)
    if mapping.types:
        wanted = list(mapping.types)
    else:
        wanted = [
            name
            for name, t in schema.type_map.items()
            if isinstance(t, GraphQLObjectType) and not name.startswith("__") and name not in roots
        ]

    declared = set(wanted)
    types: dict[str, SchemaType] = {}
    for type_name in wanted:
        gql_type = schema.type_map.get(type_name)
        if not isinstance(gql_type, GraphQLObjectType):
            raise MappingError(f"Mapped type {type_name} is not an object type of the source schema")
        fields = []
        for field_name, gql_field in gql_type.fields.items():
            converted = _convert_field(type_name, field_name, gql_field.type, declared)
            if converted is not None:
                fields.append(converted)
        types[type_name] = SchemaType(
            name=type_name,
            fields=tuple(fields),
            natural_key=mapping.natural_key(type_name),
        )
    return SchemaModel(types=types, source=source)


def acquire(
    mapping: SourceMapping,
    client: Optional[SourceClient] = None,
    static_path: Optional[Path] = None,
    introspect_enabled: bool = True,
) -> SchemaModel:
    """Obtain the source schema model.

    Tries live introspection when a client is given and introspection is
    enabled; on any failure falls back to ``static_path``.

    Raises:
        SchemaUnavailableError: If neither source yields a schema.
        MappingError: If the mapping does not fit the schema.
    """
    problems: list[str] = []

    if client is not None and introspect_enabled:
        try:
            schema = introspect(client)
        except (SourceError, GraphQLError, TypeError, ValueError, KeyError) as e:
            logger.warning("Schema introspection against %s failed: %s", client.endpoint, e)
            problems.append(f"introspection: {e}")
        else:
            logger.info("Acquired schema from %s by introspection", client.endpoint)
            return to_schema_model(schema, mapping, source="introspection")
    elif client is not None:
        logger.info("Introspection disabled; using the static schema file")

    if static_path is not None:
        try:
            schema = read_static_schema(static_path)
        except (OSError, GraphQLError, TypeError, ValueError, KeyError) as e:
            logger.error("Static schema %s is unusable: %s", static_path, e)
            problems.append(f"{static_path}: {e}")
        else:
            logger.info("Acquired schema from static file %s", static_path)
            return to_schema_model(schema, mapping, source=str(static_path))
    else:
        problems.append("no static schema file configured")

    raise SchemaUnavailableError("Source schema unavailable (" + "; ".join(problems) + ")")
