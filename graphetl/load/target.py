"""Target store interface for the load step.

The load orchestrator only ever talks to a target through this interface, so
the bulk/incremental decision, checksum verification and batch retries are
independent of the store behind it:

- **InMemoryTargetStore** for tests and dry runs
- **DgraphTargetStore** for a Dgraph cluster (bulk loader + Alpha HTTP API)

All methods are async-first, like the rest of the load step.
"""

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from graphetl.schema.augment import AugmentedSchema
from graphetl.serialize.statements import GraphStatement


class LoadState(str, Enum):
    """Target store state as seen by the load orchestrator.

    ``empty`` and ``populated`` are detected from the store; ``loaded`` and
    ``failed`` are the terminal states of one load.
    """

    EMPTY = "empty"
    POPULATED = "populated"
    LOADED = "loaded"
    FAILED = "failed"


class TargetStoreInterface(ABC):
    """Abstract interface of a graph store that accepts N-Quads artifacts.

    Implementations must make `upsert_batch` idempotent: applying the same
    batch twice leaves the store as applying it once, because entities are
    matched on the identity predicate rather than created blindly.
    """

    @abstractmethod
    async def detect_state(self) -> LoadState:
        """Return `LoadState.EMPTY` or `LoadState.POPULATED`.

        Raises:
            LoadError: If the store cannot be reached.
        """

    @abstractmethod
    async def provision_schema(self, schema: AugmentedSchema) -> None:
        """Submit the augmented schema through the store's schema administration interface."""

    @abstractmethod
    async def bulk_import(self, artifact_paths: Sequence[Path], schema: Optional[AugmentedSchema] = None) -> None:
        """Import a complete artifact set into an empty, offline store in one pass.

        All-or-nothing: on failure the store must be reset to empty before
        another attempt.

        Raises:
            BulkLoadError: On any failure.
        """

    @abstractmethod
    async def upsert_batch(self, statements: Sequence[GraphStatement]) -> None:
        """Apply one batch of statements with upsert semantics.

        Raises:
            LoadError: If the batch was not applied. The caller may retry it.
        """

    @abstractmethod
    async def count(self, type_name: Optional[str] = None) -> int:
        """Number of entities in the store, optionally restricted to one type."""

    async def close(self) -> None:
        """Release connections. The default implementation does nothing."""
