"""
graphetl - GraphQL source to deduplicated graph store migration.

Extracts every declared type from a GraphQL API in two parallel stages
(node types, then edge types), gives every entity a canonical identity
synthesized from its natural key, writes stage-ordered gzip N-Quads
artifacts and loads them into Dgraph through the bulk loader or upserts.

The heavier pipeline pieces are not imported here:

    from graphetl.pipeline import MigrationPipeline
"""

from typing import TYPE_CHECKING

from graphetl.config import EtlConfig, load_config
from graphetl.errors import (
    GraphEtlError,
    IdentityError,
    LoadError,
    MissingNaturalKeyError,
    SetupError,
    SourceError,
)
from graphetl.identity import decode, derived_id, synthesize

if TYPE_CHECKING:
    from graphetl.pipeline import MigrationPipeline, RunReport

__all__ = [
    "EtlConfig",
    "load_config",
    "GraphEtlError",
    "IdentityError",
    "LoadError",
    "MissingNaturalKeyError",
    "SetupError",
    "SourceError",
    "synthesize",
    "derived_id",
    "decode",
    "MigrationPipeline",
    "RunReport",
]

__version__ = "0.1.0"
