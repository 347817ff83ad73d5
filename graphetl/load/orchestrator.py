"""Load orchestration: pick the bulk or incremental path and drive it.

State machine of one load::

    empty     --bulk import-->          loaded | failed
    populated --incremental upserts-->  loaded | failed
    loaded    --(next load)-->          populated
    failed    --(store reset)-->        empty

Before anything is written every artifact is verified against its manifest
(size and checksum of the compressed bytes). The bulk path is all-or-nothing
and never retried. The incremental path applies artifacts in manifest order,
in batches of ``batch_size`` statements; a failed batch is retried with the
retry policy (upserts keyed by canonical ID are idempotent) and only
escalated once retries are exhausted.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Optional, Sequence

from graphbundle import ArtifactManifest, RunManifest
from pydantic import BaseModel, Field, ValidationError

from graphetl.errors import ArtifactIntegrityError, GraphEtlError, IdentityError, IncrementalLoadError, LoadError
from graphetl.extraction.retry import RetryPolicy, RetryStats
from graphetl.identity import decode
from graphetl.load.target import LoadState, TargetStoreInterface
from graphetl.schema.augment import AugmentedSchema
from graphetl.schema.classify import TypeRole
from graphetl.serialize.serializer import RUN_MANIFEST
from graphetl.serialize.statements import DGRAPH_TYPE_PREDICATE, GraphStatement, parse_nquad
from graphetl.serialize.writer import file_checksum, manifest_path_for

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[LoadState, set[LoadState]] = {
    LoadState.EMPTY: {LoadState.LOADED, LoadState.FAILED},
    LoadState.POPULATED: {LoadState.LOADED, LoadState.FAILED},
    LoadState.LOADED: {LoadState.POPULATED},
    LoadState.FAILED: {LoadState.EMPTY},
}

_STAGE_ORDER = {"node": 0, "all": 1, "edge": 2}


class InvalidStateTransitionError(GraphEtlError):
    pass


def check_transition(current: LoadState, new: LoadState) -> None:
    if new not in VALID_TRANSITIONS[current]:
        raise InvalidStateTransitionError(f"Invalid load state transition {current.value} -> {new.value}")


class LoadArtifact(BaseModel):
    """An artifact file plus the manifest it was closed with."""

    model_config = {"frozen": True}

    path: Path
    manifest: ArtifactManifest

    @classmethod
    def from_path(cls, path: Path) -> "LoadArtifact":
        """Pair an artifact with ``<name>.manifest.json`` next to it."""
        manifest_file = manifest_path_for(path)
        try:
            manifest = ArtifactManifest.model_validate_json(manifest_file.read_text())
        except (OSError, ValidationError) as e:
            raise ArtifactIntegrityError(f"Cannot read manifest {manifest_file}: {e}") from e
        return cls(path=path, manifest=manifest)

    def verify(self) -> None:
        """Check size and checksum against the manifest.

        Raises:
            ArtifactIntegrityError: If the file is missing or differs.
        """
        if not self.path.is_file():
            raise ArtifactIntegrityError(f"Artifact {self.path} does not exist")
        size = self.path.stat().st_size
        if size != self.manifest.byte_size:
            raise ArtifactIntegrityError(f"Artifact {self.path} is {size} bytes, manifest says {self.manifest.byte_size}")
        checksum = file_checksum(self.path)
        if checksum != self.manifest.checksum:
            raise ArtifactIntegrityError(f"Artifact {self.path} checksum {checksum} does not match its manifest")

    def statements(self) -> Iterator[GraphStatement]:
        stage = TypeRole.EDGE if self.manifest.stage == "edge" else TypeRole.NODE
        with gzip.open(self.path, "rt", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    yield parse_nquad(line, stage)


def load_run(run_dir: Path) -> list[LoadArtifact]:
    """Artifacts of one extraction run, in the order of its run manifest."""
    manifest_file = run_dir / RUN_MANIFEST
    try:
        run = RunManifest.model_validate_json(manifest_file.read_text())
    except (OSError, ValidationError) as e:
        raise ArtifactIntegrityError(f"Cannot read run manifest {manifest_file}: {e}") from e
    return [LoadArtifact(path=run_dir / m.path, manifest=m) for m in run.artifacts]


def order_artifacts(artifacts: Sequence[LoadArtifact]) -> list[LoadArtifact]:
    """Stable sort putting every Node artifact before every Edge artifact.

    Artifacts from several runs (several source instances) can be loaded
    together; the stage order then holds across the whole set.
    """
    return sorted(artifacts, key=lambda a: _STAGE_ORDER[a.manifest.stage])


class LoadMode(str, Enum):
    BULK = "bulk"
    INCREMENTAL = "incremental"


class LoadResult(BaseModel):
    """Outcome of one load.

    Attributes:
        state: Terminal state, ``loaded`` or ``failed``.
        initial_state: State of the target before the load.
        mode: Path taken; None if the load failed before choosing one.
        artifacts: Artifact files fully applied.
        statements: Statements applied on the incremental path.
        batches: Batches applied on the incremental path.
        retries: Batch retries performed.
        failed_artifact: Artifact being applied when the load failed.
        failed_types: Types in the batch that could not be applied.
        error: Description of the failure.
        requires_reset: True when the target must be reset to empty before retrying.
        archived: Paths the artifacts were moved to.
    """

    state: LoadState
    initial_state: LoadState
    mode: Optional[LoadMode] = None
    artifacts: list[str] = Field(default_factory=list)
    statements: int = 0
    batches: int = 0
    retries: int = 0
    failed_artifact: Optional[str] = None
    failed_types: tuple[str, ...] = ()
    error: Optional[str] = None
    requires_reset: bool = False
    archived: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == LoadState.LOADED


def _types_in(batch: Sequence[GraphStatement]) -> tuple[str, ...]:
    names = {s.literal for s in batch if s.predicate == DGRAPH_TYPE_PREDICATE and s.literal}
    if not names:
        for s in batch:
            try:
                names.add(decode(s.subject)[0])
            except IdentityError:
                continue
    return tuple(sorted(names))


class LoadOrchestrator:
    """Applies artifacts to a target store.

    Example:
        ```python
        orchestrator = LoadOrchestrator(InMemoryTargetStore(), schema=augmented)
        result = await orchestrator.load(load_run(Path("build")))
        assert result.succeeded
        ```
    """

    def __init__(
        self,
        target: TargetStoreInterface,
        schema: Optional[AugmentedSchema] = None,
        policy: Optional[RetryPolicy] = None,
        batch_size: int = 1000,
        archive_dir: Optional[Path] = None,
        provision: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.target = target
        self.schema = schema
        self.policy = policy or RetryPolicy()
        self.batch_size = batch_size
        self.archive_dir = archive_dir
        self.provision = provision
        self._sleep = sleep

    async def load(self, artifacts: Sequence[LoadArtifact], target_state: Optional[LoadState] = None) -> LoadResult:
        """Load ``artifacts`` into the target.

        Args:
            artifacts: Artifacts of one or more runs.
            target_state: Known target state; detected from the store when None.

        Returns:
            A `LoadResult` in state ``loaded`` or ``failed``.
        """
        state = target_state or await self.target.detect_state()
        if state not in (LoadState.EMPTY, LoadState.POPULATED):
            raise InvalidStateTransitionError(f"Cannot start a load from state {state.value}")
        ordered = order_artifacts(artifacts)
        logger.info("Loading %d artifact(s) into a %s target", len(ordered), state.value)

        for artifact in ordered:
            try:
                artifact.verify()
            except ArtifactIntegrityError as e:
                logger.error("%s", e)
                return self._finish(LoadResult(
                    state=LoadState.FAILED, initial_state=state, failed_artifact=str(artifact.path), error=str(e),
                ))

        if state == LoadState.EMPTY:
            result = await self._bulk(ordered)
        else:
            result = await self._incremental(ordered)

        if result.succeeded and self.archive_dir is not None:
            result = result.model_copy(update={"archived": self._archive(ordered)})
        return self._finish(result)

    def _finish(self, result: LoadResult) -> LoadResult:
        check_transition(result.initial_state, result.state)
        if result.succeeded:
            logger.info("Load finished (%s): %d artifact(s)", result.mode.value if result.mode else "-", len(result.artifacts))
        else:
            logger.error("Load failed at %s: %s", result.failed_artifact, result.error)
        return result

    async def _bulk(self, artifacts: list[LoadArtifact]) -> LoadResult:
        try:
            await self.target.bulk_import([a.path for a in artifacts], self.schema)
        except LoadError as e:
            return LoadResult(
                state=LoadState.FAILED,
                initial_state=LoadState.EMPTY,
                mode=LoadMode.BULK,
                failed_artifact=", ".join(str(a.path) for a in artifacts),
                failed_types=tuple(sorted({t for a in artifacts for t in a.manifest.type_counts})),
                error=str(e),
                requires_reset=True,
            )
        return LoadResult(
            state=LoadState.LOADED,
            initial_state=LoadState.EMPTY,
            mode=LoadMode.BULK,
            artifacts=[str(a.path) for a in artifacts],
            statements=sum(a.manifest.statement_count for a in artifacts),
        )

    async def _incremental(self, artifacts: list[LoadArtifact]) -> LoadResult:
        result = LoadResult(state=LoadState.POPULATED, initial_state=LoadState.POPULATED, mode=LoadMode.INCREMENTAL)
        stats = RetryStats()

        if self.provision and self.schema is not None:
            try:
                await self.target.provision_schema(self.schema)
            except LoadError as e:
                return result.model_copy(update={"state": LoadState.FAILED, "error": f"schema provisioning: {e}"})

        for artifact in artifacts:
            for batch in _batches(artifact.statements(), self.batch_size):
                try:
                    await self._apply_batch(artifact, batch, result.batches + 1, stats)
                except IncrementalLoadError as e:
                    return result.model_copy(
                        update={
                            "state": LoadState.FAILED,
                            "failed_artifact": e.artifact,
                            "failed_types": e.types,
                            "error": str(e),
                            "retries": stats.retries,
                        }
                    )
                result = result.model_copy(
                    update={"statements": result.statements + len(batch), "batches": result.batches + 1}
                )
            result = result.model_copy(update={"artifacts": [*result.artifacts, str(artifact.path)]})
            logger.info("Applied %s", artifact.path)

        return result.model_copy(update={"state": LoadState.LOADED, "retries": stats.retries})

    async def _apply_batch(
        self, artifact: LoadArtifact, batch: list[GraphStatement], number: int, stats: RetryStats
    ) -> None:
        """Upsert one batch with retries.

        Raises:
            IncrementalLoadError: Once the retry budget is spent, naming the
                artifact and the types in the batch.
        """
        description = f"upsert batch {number} of {artifact.path.name}"
        try:
            await self.policy.call_async(
                lambda: self.target.upsert_batch(batch),
                stats=stats,
                sleep=self._sleep,
                retryable=(LoadError,),
                description=description,
            )
        except LoadError as e:
            raise IncrementalLoadError(
                f"{description} failed: {e}", artifact=str(artifact.path), types=_types_in(batch)
            ) from e

    def _archive(self, artifacts: list[LoadArtifact]) -> list[str]:
        assert self.archive_dir is not None
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        moved: list[str] = []
        for artifact in artifacts:
            for path in (artifact.path, manifest_path_for(artifact.path)):
                if path.exists():
                    target = self.archive_dir / f"{artifact.manifest.artifact_id}-{path.name}"
                    shutil.move(str(path), target)
                    moved.append(str(target))
        logger.info("Archived %d file(s) to %s", len(moved), self.archive_dir)
        return moved


def _batches(statements: Iterator[GraphStatement], size: int) -> Iterator[list[GraphStatement]]:
    batch: list[GraphStatement] = []
    for statement in statements:
        batch.append(statement)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
