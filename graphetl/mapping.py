"""Declarative per-type mapping: natural keys and augmentation rules.

The mapping file is the only place natural keys are declared; they are never
inferred from the source schema. Example ``mapping.yaml``::

    types:
      Artifact:
        natural_key: [algorithm, digest]
      Package:
        natural_key: [type, namespace, name, version]
      IsDependency: {}

    augmentation:
      - type: Artifact
        field: digest
        intent: search
        args: {by: [exact]}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from graphetl.errors import MappingError
from graphetl.schema.augment import AugmentationRule


class TypeMapping(BaseModel):
    """Mapping entry for one source type.

    Attributes:
        natural_key: Ordered natural-key field names; empty for edges and
            identity-less nodes.
    """

    model_config = {"frozen": True}

    natural_key: tuple[str, ...] = ()


class SourceMapping(BaseModel):
    """All declared types and augmentation rules, in file order."""

    model_config = {"frozen": True}

    types: dict[str, TypeMapping] = Field(default_factory=dict)
    augmentation: tuple[AugmentationRule, ...] = ()

    def natural_key(self, type_name: str) -> tuple[str, ...]:
        entry = self.types.get(type_name)
        return entry.natural_key if entry else ()


def parse_mapping(data: Any, origin: str = "<mapping>") -> SourceMapping:
    """Validate an already-parsed mapping document."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MappingError(f"{origin}: top level must be a mapping")
    types = data.get("types") or {}
    if not isinstance(types, dict):
        raise MappingError(f"{origin}: 'types' must be a mapping of type name to entry")
    normalized = {name: (entry or {}) for name, entry in types.items()}
    try:
        return SourceMapping(types=normalized, augmentation=tuple(data.get("augmentation") or ()))
    except ValidationError as e:
        raise MappingError(f"{origin}: {e}") from e


def load_mapping(path: Path) -> SourceMapping:
    """Load and validate a mapping YAML file.

    Raises:
        MappingError: If the file cannot be read or does not validate.
    """
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise MappingError(f"Cannot read mapping file {path}: {e}") from e
    return parse_mapping(data, origin=str(path))
