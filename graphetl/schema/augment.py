"""Schema augmentation for target-store provisioning.

`augment` is a pure rewrite pass run once before the target store is
provisioned. It attaches directive intents to fields:

- **uniqueness**: every keyed Node type's natural-key fields, plus any field
  named by an explicit uniqueness rule.
- **search**: fields named by a search rule (tokenizers in ``args.by``).
- **federation_key**: fields named by a federation rule.

The result renders to the two documents Dgraph needs: a GraphQL SDL for the
``/admin/schema`` endpoint and a DQL schema for ``/alter`` and the bulk
loader's ``-s`` flag.

A rule that names a type or field absent from the schema is a fatal
provisioning error, never a runtime one.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from graphetl.errors import AugmentationError
from graphetl.schema.classify import Classification
from graphetl.schema.models import SchemaField, SchemaModel, SchemaType, predicate_name

# GraphQL scalars Dgraph understands natively; anything else is stored as a string.
_GRAPHQL_SCALARS = {"String", "ID", "Int", "Int64", "Float", "Boolean", "DateTime"}

_DQL_SCALARS = {
    "String": "string",
    "ID": "string",
    "Int": "int",
    "Int64": "int",
    "Float": "float",
    "Boolean": "bool",
    "DateTime": "datetime",
}

# GraphQL @search argument -> DQL @index tokenizer
_DQL_TOKENIZERS = {"regexp": "trigram"}

# tokenizer backing equality lookups for each DQL scalar type
_DQL_EQUALITY_TOKENIZERS = {"string": "exact", "int": "int", "float": "float", "bool": "bool", "datetime": "hour"}

DEFAULT_SEARCH_TOKENIZERS = ("term",)


class DirectiveIntent(str, Enum):
    UNIQUENESS = "uniqueness"
    SEARCH = "search"
    FEDERATION_KEY = "federation_key"


class AugmentationRule(BaseModel):
    """Declarative rule attaching a directive intent to one field.

    In YAML the type is given under ``type``::

        - type: Artifact
          field: digest
          intent: search
          args: {by: [hash]}
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type_name: str = Field(alias="type")
    field: str
    intent: DirectiveIntent
    args: dict[str, Any] = Field(default_factory=dict)


class FieldDirective(BaseModel):
    model_config = {"frozen": True}

    intent: DirectiveIntent
    args: dict[str, Any] = Field(default_factory=dict)


class AugmentedSchema(BaseModel):
    """Schema model plus the directive intents attached to its fields.

    Attributes:
        schema_model: The source schema, unchanged.
        classification: Node/Edge roles of the schema's types.
        directives: type name -> field name -> directives, in attachment order.
        identity_predicate: Predicate that stores canonical IDs in the target.
    """

    model_config = {"frozen": True}

    schema_model: SchemaModel
    classification: Classification
    directives: dict[str, dict[str, tuple[FieldDirective, ...]]] = Field(default_factory=dict)
    identity_predicate: str = "xid"

    def directives_for(self, type_name: str, field_name: str) -> tuple[FieldDirective, ...]:
        return self.directives.get(type_name, {}).get(field_name, ())

    def has_intent(self, type_name: str, field_name: str, intent: DirectiveIntent) -> bool:
        return any(d.intent == intent for d in self.directives_for(type_name, field_name))

    def federation_keys(self, type_name: str) -> tuple[str, ...]:
        schema_type = self.schema_model[type_name]
        return tuple(
            f.name for f in schema_type.fields if self.has_intent(type_name, f.name, DirectiveIntent.FEDERATION_KEY)
        )

    def search_tokenizers(self, type_name: str, field_name: str) -> tuple[str, ...]:
        tokenizers: list[str] = []
        for d in self.directives_for(type_name, field_name):
            if d.intent != DirectiveIntent.SEARCH:
                continue
            for tok in d.args.get("by") or DEFAULT_SEARCH_TOKENIZERS:
                if tok not in tokenizers:
                    tokenizers.append(tok)
        return tuple(tokenizers)

    def to_graphql_sdl(self) -> str:
        """Render the GraphQL SDL submitted to Dgraph's ``/admin/schema``."""
        blocks = [self._sdl_type(t) for t in self.schema_model.iter_types()]
        return "\n\n".join(blocks) + "\n"

    def to_dgraph_schema(self) -> str:
        """Render the DQL schema used by ``/alter`` and ``dgraph bulk -s``."""
        lines = [f"{self.identity_predicate}: string @index(exact) @upsert ."]
        for schema_type in self.schema_model.iter_types():
            for f in schema_type.fields:
                lines.append(self._dql_predicate(schema_type, f))
        lines.append("")
        for schema_type in self.schema_model.iter_types():
            lines.append(f"type {schema_type.name} {{")
            lines.append(f"  {self.identity_predicate}")
            for f in schema_type.fields:
                lines.append(f"  {predicate_name(schema_type.name, f.name)}")
            lines.append("}")
        return "\n".join(lines) + "\n"

    def _sdl_type(self, schema_type: SchemaType) -> str:
        header = f"type {schema_type.name}"
        keys = self.federation_keys(schema_type.name)
        if keys:
            header += f' @key(fields: "{" ".join(keys)}")'
        lines = [header + " {", f'  {self.identity_predicate}: String! @id @dgraph(pred: "{self.identity_predicate}")']
        single_key = len(schema_type.natural_key) == 1
        for f in schema_type.fields:
            directives: list[str] = []
            tokenizers = list(self.search_tokenizers(schema_type.name, f.name))
            if self.has_intent(schema_type.name, f.name, DirectiveIntent.UNIQUENESS):
                if single_key and f.name in schema_type.natural_key:
                    directives.append("@id")
                elif "hash" not in tokenizers and "exact" not in tokenizers:
                    # composite keys are unique only as a tuple, enforced through the identity field
                    tokenizers.insert(0, "hash")
            if tokenizers:
                directives.append(f"@search(by: [{', '.join(tokenizers)}])")
            suffix = (" " + " ".join(directives)) if directives else ""
            lines.append(f"  {f.name}: {_sdl_field_type(f)}{suffix}")
        lines.append("}")
        return "\n".join(lines)

    def _dql_predicate(self, schema_type: SchemaType, f: SchemaField) -> str:
        base = "uid" if f.is_reference else _DQL_SCALARS.get(f.type_name, "string")
        dql_type = f"[{base}]" if f.is_list else base
        parts = [f"{predicate_name(schema_type.name, f.name)}: {dql_type}"]
        if f.is_reference:
            return " ".join(parts) + " ."
        tokenizers = [_DQL_TOKENIZERS.get(t, t) for t in self.search_tokenizers(schema_type.name, f.name)]
        unique = self.has_intent(schema_type.name, f.name, DirectiveIntent.UNIQUENESS)
        if unique and not any(t in ("hash", "exact") for t in tokenizers):
            tokenizers.insert(0, _DQL_EQUALITY_TOKENIZERS[base])
        if tokenizers:
            parts.append(f"@index({', '.join(dict.fromkeys(tokenizers))})")
        if unique:
            parts.append("@upsert")
        return " ".join(parts) + " ."


def _sdl_field_type(f: SchemaField) -> str:
    if f.is_reference or f.type_name in _GRAPHQL_SCALARS:
        named = f.type_name
    else:
        named = "String"
    rendered = f"[{named}]" if f.is_list else named
    return rendered if f.nullable else rendered + "!"


def _validate_rule(model: SchemaModel, rule: AugmentationRule) -> None:
    if rule.type_name not in model:
        raise AugmentationError(f"Augmentation rule references unknown type '{rule.type_name}'")
    if not model[rule.type_name].has_field(rule.field):
        raise AugmentationError(f"Augmentation rule references unknown field '{rule.type_name}.{rule.field}'")
    by = rule.args.get("by")
    if rule.intent == DirectiveIntent.SEARCH and by is not None:
        if not isinstance(by, (list, tuple)) or not all(isinstance(t, str) for t in by):
            raise AugmentationError(f"Search rule on {rule.type_name}.{rule.field}: 'by' must be a list of tokenizer names")


def augment(
    model: SchemaModel,
    classification: Classification,
    rules: tuple[AugmentationRule, ...] | list[AugmentationRule] = (),
    identity_predicate: str = "xid",
) -> AugmentedSchema:
    """Attach uniqueness, search and federation-key intents to the schema.

    Raises:
        AugmentationError: If a rule names a type or field absent from the schema.
    """
    for rule in rules:
        _validate_rule(model, rule)

    directives: dict[str, dict[str, list[FieldDirective]]] = {}

    def attach(type_name: str, field_name: str, directive: FieldDirective) -> None:
        per_field = directives.setdefault(type_name, {}).setdefault(field_name, [])
        if directive not in per_field:
            per_field.append(directive)

    for schema_type in model.iter_types():
        if classification.has_identity(schema_type.name):
            for key_field in schema_type.natural_key:
                attach(schema_type.name, key_field, FieldDirective(intent=DirectiveIntent.UNIQUENESS))

    for rule in rules:
        attach(rule.type_name, rule.field, FieldDirective(intent=rule.intent, args=dict(rule.args)))

    return AugmentedSchema(
        schema_model=model,
        classification=classification,
        directives={t: {f: tuple(ds) for f, ds in fields.items()} for t, fields in directives.items()},
        identity_predicate=identity_predicate,
    )
