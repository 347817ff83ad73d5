"""
Graph Artifact Models

Lightweight Pydantic models describing the compressed N-Quads artifacts that
graphetl writes and later loads into the target store.

Example:
    # Producer side - written by the serializer
    from graphbundle import ArtifactManifest

    manifest = ArtifactManifest(
        artifact_id="3f6c...",
        path="nodes.rdf.gz",
        stage="node",
        type_counts={"Artifact": 2},
        checksum="sha256:...",
        created_at="2024-01-15T10:30:00Z",
    )

    # Consumer side - read by the load orchestrator
    from graphbundle import RunManifest

    with open("run_manifest.json") as f:
        run = RunManifest.model_validate_json(f.read())
"""

from .models import (
    ArtifactManifest,
    ArtifactStage,
    RunManifest,
)

__all__ = [
    "ArtifactManifest",
    "ArtifactStage",
    "RunManifest",
]

__version__ = "0.1.0"
