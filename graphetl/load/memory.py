"""In-memory target store for testing and dry runs.

Entities are kept in a dictionary keyed by their identity value (the
``xid`` literal, falling back to the blank node label), so loading the same
statements twice, or the same entity from two sources, merges instead of
duplicating. Predicate values are sets, which makes every upsert
idempotent.

**Not for production**: no persistence and no concurrency control.
"""

from __future__ import annotations

import gzip
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional, Sequence

from graphetl.errors import BulkLoadError
from graphetl.load.target import LoadState, TargetStoreInterface
from graphetl.schema.augment import AugmentedSchema
from graphetl.serialize.statements import DGRAPH_TYPE_PREDICATE, GraphStatement, parse_nquad, typed_value

logger = logging.getLogger(__name__)


class InMemoryTargetStore(TargetStoreInterface):
    """Dictionary-backed graph store with upsert-by-identity semantics.

    Example:
        ```python
        store = InMemoryTargetStore()
        await store.bulk_import([Path("build/nodes.rdf.gz"), Path("build/edges.rdf.gz")])
        assert await store.count("Artifact") == 1
        ```
    """

    def __init__(self, identity_predicate: str = "xid"):
        self.identity_predicate = identity_predicate
        self._entities: dict[str, dict[str, set[Any]]] = {}
        self.schema: Optional[AugmentedSchema] = None
        self.bulk_imports = 0
        self.batches_applied = 0

    async def detect_state(self) -> LoadState:
        return LoadState.POPULATED if self._entities else LoadState.EMPTY

    async def provision_schema(self, schema: AugmentedSchema) -> None:
        self.schema = schema

    async def bulk_import(self, artifact_paths: Sequence[Path], schema: Optional[AugmentedSchema] = None) -> None:
        if self._entities:
            raise BulkLoadError("Bulk import requires an empty target")
        statements: list[GraphStatement] = []
        try:
            for path in artifact_paths:
                with gzip.open(path, "rt", encoding="utf-8") as f:
                    statements.extend(parse_nquad(line) for line in f if line.strip())
        except (OSError, ValueError) as e:
            raise BulkLoadError(f"Bulk import failed: {e}") from e
        if schema is not None:
            self.schema = schema
        self._apply(statements)
        self.bulk_imports += 1
        logger.info("Bulk imported %d statement(s) from %d artifact(s)", len(statements), len(artifact_paths))

    async def upsert_batch(self, statements: Sequence[GraphStatement]) -> None:
        self._apply(statements)
        self.batches_applied += 1

    async def count(self, type_name: Optional[str] = None) -> int:
        if type_name is None:
            return len(self._entities)
        return sum(1 for e in self._entities.values() if type_name in e.get(DGRAPH_TYPE_PREDICATE, ()))

    def _apply(self, statements: Sequence[GraphStatement]) -> None:
        identities = {
            s.subject: s.literal for s in statements if s.predicate == self.identity_predicate and s.literal is not None
        }

        def key(label: str) -> str:
            return identities.get(label, label)

        for s in statements:
            entity = self._entities.setdefault(key(s.subject), defaultdict(set))
            entity[s.predicate].add(key(s.object_id) if s.object_id is not None else typed_value(s))
            if s.object_id is not None:
                self._entities.setdefault(key(s.object_id), defaultdict(set))

    def get(self, identity: str) -> Optional[dict[str, set[Any]]]:
        """Predicates of one entity, keyed by predicate name."""
        entity = self._entities.get(identity)
        return dict(entity) if entity is not None else None

    def identities(self, type_name: Optional[str] = None) -> list[str]:
        return [
            identity
            for identity, entity in self._entities.items()
            if type_name is None or type_name in entity.get(DGRAPH_TYPE_PREDICATE, ())
        ]
