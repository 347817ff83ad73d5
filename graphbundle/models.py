"""
Graph Artifact Models

Lightweight Pydantic models defining the contract between artifact producers
(the graphetl serializer) and consumers (the graphetl load orchestrator, or an
operator feeding the files to `dgraph bulk` / `dgraph live` by hand).

This module has minimal dependencies (only pydantic) so the load side can be
run on a machine that never talks to the source API.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

ArtifactStage = Literal["node", "edge", "all"]

_STAGE_ORDER = {"node": 0, "all": 1, "edge": 2}


class ArtifactManifest(BaseModel):
    """Manifest written next to every closed graph-exchange artifact.

    An artifact is immutable once its manifest exists. The checksum covers the
    compressed bytes on disk, so it can be verified without decompressing.
    """

    model_config = {"frozen": True}

    artifact_id: str = Field(..., description="Unique artifact identifier (UUID)")
    path: str = Field(..., description="Artifact file name, relative to the manifest")
    format: str = Field("nquads", description="Statement format inside the artifact")
    compression: str = Field("gzip", description="Compression applied to the artifact")
    stage: ArtifactStage = Field(..., description="Which extraction stage produced the statements")
    type_counts: Dict[str, int] = Field(default_factory=dict, description="Records serialized per source type")
    statement_count: int = Field(0, ge=0, description="Number of statements (lines) in the artifact")
    byte_size: int = Field(0, ge=0, description="Size of the compressed artifact in bytes")
    checksum: str = Field(..., description="Checksum of the compressed artifact, e.g. 'sha256:ab12...'")
    created_at: str = Field(..., description="ISO 8601 creation timestamp")
    source: Optional[str] = Field(None, description="Label of the source instance the data came from")

    @property
    def record_count(self) -> int:
        return sum(self.type_counts.values())


class RunManifest(BaseModel):
    """Describes the ordered artifact set produced by one extraction run.

    Node artifacts always precede Edge artifacts, so a consumer that applies
    them in list order never sees an edge pointing at an undefined node.
    """

    model_config = {"frozen": True}

    run_id: str = Field(..., description="Unique run identifier (UUID)")
    created_at: str = Field(..., description="ISO 8601 creation timestamp")
    source: Optional[str] = Field(None, description="Label of the source instance")
    artifacts: List[ArtifactManifest] = Field(default_factory=list, description="Artifacts in load order")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Run metadata (counts, failed types, ...)")

    @model_validator(mode="after")
    def check_stage_order(self) -> "RunManifest":
        order = [_STAGE_ORDER[a.stage] for a in self.artifacts]
        if order != sorted(order):
            raise ValueError("Node artifacts must precede edge artifacts in a run manifest")
        return self
