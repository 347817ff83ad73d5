"""Target store interfaces, implementations and the load orchestrator."""

from graphetl.load.dgraph import DgraphTargetStore
from graphetl.load.memory import InMemoryTargetStore
from graphetl.load.orchestrator import LoadArtifact, LoadMode, LoadOrchestrator, LoadResult, load_run
from graphetl.load.target import LoadState, TargetStoreInterface

__all__ = [
    "TargetStoreInterface",
    "LoadState",
    "InMemoryTargetStore",
    "DgraphTargetStore",
    "LoadArtifact",
    "LoadMode",
    "LoadOrchestrator",
    "LoadResult",
    "load_run",
]
