"""Gzip-compressed N-Quads artifact with its manifest."""

from __future__ import annotations

import gzip
import hashlib
import logging
import uuid
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from graphbundle import ArtifactManifest, ArtifactStage

from graphetl.serialize.statements import GraphStatement

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".manifest.json"
CHECKSUM_ALGORITHM = "sha256"


def manifest_path_for(artifact_path: Path) -> Path:
    return artifact_path.with_name(artifact_path.name + MANIFEST_SUFFIX)


def file_checksum(path: Path, chunk_size: int = 1 << 20) -> str:
    """``sha256:<hex>`` of a file's bytes."""
    digest = hashlib.new(CHECKSUM_ALGORITHM)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return f"{CHECKSUM_ALGORITHM}:{digest.hexdigest()}"


class ArtifactWriter:
    """Buffers statements and flushes them to a gzip N-Quads file.

    Statements are held in memory until ``buffer_size`` of them accumulate,
    then written in one call. `close` flushes the rest, computes size and
    checksum of the compressed file and writes ``<name>.manifest.json``;
    after that the artifact is immutable.

    Example:
        ```python
        writer = ArtifactWriter(Path("build/nodes.rdf.gz"), stage="node")
        writer.write(statements)
        writer.count_record("Artifact")
        manifest = writer.close()
        ```
    """

    def __init__(
        self,
        path: Path,
        stage: ArtifactStage,
        source: Optional[str] = None,
        buffer_size: int = 10_000,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.path = path
        self.stage = stage
        self.source = source
        self.buffer_size = buffer_size
        self._buffer: list[str] = []
        self._type_counts: Counter[str] = Counter()
        self._statement_count = 0
        self._flushes = 0
        self._manifest: Optional[ArtifactManifest] = None
        path.parent.mkdir(parents=True, exist_ok=True)
        self._file = gzip.open(path, "wt", encoding="utf-8", newline="\n")

    @property
    def closed(self) -> bool:
        return self._manifest is not None

    @property
    def statement_count(self) -> int:
        return self._statement_count

    @property
    def flushes(self) -> int:
        return self._flushes

    def write(self, statements: Iterable[GraphStatement]) -> None:
        if self.closed:
            raise ValueError(f"Artifact {self.path} is closed")
        for statement in statements:
            self._buffer.append(statement.to_nquad())
            self._statement_count += 1
            if len(self._buffer) >= self.buffer_size:
                self.flush()

    def count_record(self, type_name: str, n: int = 1) -> None:
        self._type_counts[type_name] += n

    def flush(self) -> None:
        if not self._buffer:
            return
        self._file.write("\n".join(self._buffer) + "\n")
        self._buffer.clear()
        self._flushes += 1

    def close(self) -> ArtifactManifest:
        """Flush, close the file and write the manifest. Idempotent."""
        if self._manifest is not None:
            return self._manifest
        self.flush()
        self._file.close()
        self._manifest = ArtifactManifest(
            artifact_id=str(uuid.uuid4()),
            path=self.path.name,
            stage=self.stage,
            type_counts=dict(self._type_counts),
            statement_count=self._statement_count,
            byte_size=self.path.stat().st_size,
            checksum=file_checksum(self.path),
            created_at=datetime.now(timezone.utc).isoformat(),
            source=self.source,
        )
        manifest_path_for(self.path).write_text(self._manifest.model_dump_json(indent=2))
        logger.info(
            "Closed %s: %d statement(s), %d byte(s), %d flush(es)",
            self.path,
            self._statement_count,
            self._manifest.byte_size,
            self._flushes,
        )
        return self._manifest

    def abort(self) -> None:
        """Close and delete the partial artifact, and any manifest left at its path."""
        if self._manifest is not None:
            return
        if not self._file.closed:
            self._file.close()
        self.path.unlink(missing_ok=True)
        manifest_path_for(self.path).unlink(missing_ok=True)
        logger.warning("Aborted %s after %d statement(s)", self.path, self._statement_count)
