"""Migration pipeline: prepare, extract, serialize, load.

`MigrationPipeline` wires the components together from one `EtlConfig`:

1. **prepare**: acquire the schema, classify types, augment the schema.
   Any failure here is a setup error and nothing is extracted.
2. **extract**: run both extraction stages, streaming every page through
   the serializer into the output directory. Writes the artifacts, their
   manifests, ``run_manifest.json`` and the augmented schema documents.
3. **load**: verify the artifacts of one or more runs and apply them to a
   target store.

Each run ends with a `RunReport` listing per-type record counts, skipped
records and failed types. Skipped records alone do not fail a run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

import httpx
from pydantic import BaseModel, Field, ValidationError

from graphetl.config import EtlConfig
from graphetl.errors import ArtifactIntegrityError
from graphetl.extraction.engine import ExtractionEngine, OutcomeStatus, TypeOutcome
from graphetl.extraction.retry import RetryPolicy
from graphetl.load.orchestrator import LoadArtifact, LoadOrchestrator, LoadResult, load_run
from graphetl.load.target import TargetStoreInterface
from graphetl.logging import setup_logging
from graphetl.mapping import SourceMapping, load_mapping
from graphetl.schema.acquire import acquire
from graphetl.schema.augment import AugmentedSchema, augment
from graphetl.schema.classify import TypeRole, classify
from graphetl.serialize.serializer import GraphSerializer
from graphetl.source.client import SourceClient
from graphetl.source.queries import QueryLibrary

logger = setup_logging()

SCHEMA_JSON = "schema.json"
SCHEMA_DQL = "schema.dql"
SCHEMA_SDL = "schema.graphql"


def write_schema_documents(augmented: AugmentedSchema, output_dir: Path) -> None:
    """Store the augmented schema next to the artifacts it describes."""
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / SCHEMA_JSON).write_text(augmented.model_dump_json(indent=2))
    (output_dir / SCHEMA_DQL).write_text(augmented.to_dgraph_schema())
    (output_dir / SCHEMA_SDL).write_text(augmented.to_graphql_sdl())


def read_augmented_schema(run_dir: Path) -> AugmentedSchema:
    path = run_dir / SCHEMA_JSON
    try:
        return AugmentedSchema.model_validate_json(path.read_text())
    except (OSError, ValidationError) as e:
        raise ArtifactIntegrityError(f"Cannot read augmented schema {path}: {e}") from e


class TypeReport(BaseModel):
    """Per-type line of the run report."""

    model_config = {"frozen": True}

    type_name: str
    role: TypeRole
    status: OutcomeStatus
    extracted: int = 0
    serialized: int = 0
    skipped: int = 0
    pages: int = 0
    attempts: int = 0
    rate_limit_waits: int = 0
    error: Optional[str] = None


class RunReport(BaseModel):
    """Summary of one migration run."""

    run_id: Optional[str] = None
    source: Optional[str] = None
    started_at: str
    finished_at: Optional[str] = None
    types: list[TypeReport] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    load: Optional[LoadResult] = None

    @property
    def failed_types(self) -> tuple[str, ...]:
        return tuple(t.type_name for t in self.types if t.status == OutcomeStatus.FAILED)

    @property
    def skipped_total(self) -> int:
        return sum(t.skipped for t in self.types)

    @property
    def succeeded(self) -> bool:
        if self.failed_types:
            return False
        return self.load is None or self.load.succeeded

    def summary(self) -> str:
        lines = [f"Run {self.run_id or '-'} from {self.source or '-'}"]
        for t in self.types:
            line = f"  {t.type_name:<24} {t.role.value:<5} {t.status.value:<9} extracted={t.extracted} skipped={t.skipped}"
            if t.error:
                line += f" error={t.error}"
            lines.append(line)
        if self.load is not None:
            lines.append(f"  load: {self.load.state.value} ({self.load.mode.value if self.load.mode else '-'})")
        lines.append("  result: " + ("succeeded" if self.succeeded else "FAILED"))
        return "\n".join(lines)


class MigrationPipeline:
    """End-to-end migration driven by one immutable configuration.

    Args:
        config: Run configuration.
        mapping: Natural keys and augmentation rules.
        queries: List query per type.
        transport: Optional httpx transport for the source (tests).
        sleep: Backoff sleep used by extraction workers.
    """

    def __init__(
        self,
        config: EtlConfig,
        mapping: SourceMapping,
        queries: QueryLibrary,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.mapping = mapping
        self.queries = queries
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: EtlConfig, transport: Optional[httpx.BaseTransport] = None) -> "MigrationPipeline":
        """Load the mapping and query library named by the configuration.

        Raises:
            ConfigError: If either path is not configured.
            MappingError: If either file is malformed.
        """
        config.require("mapping_file", "query_library")
        return cls(
            config,
            load_mapping(config.mapping_file),  # type: ignore[arg-type]
            QueryLibrary.load(config.query_library),  # type: ignore[arg-type]
            transport=transport,
        )

    def prepare(self) -> AugmentedSchema:
        """Acquire, classify and augment the source schema.

        Raises:
            SetupError: If the schema is unavailable or the mapping does not fit it.
        """
        client = SourceClient.from_config(self.config, transport=self._transport) if self.config.source_url else None
        try:
            model = acquire(
                self.mapping,
                client=client,
                static_path=self.config.schema_file,
                introspect_enabled=self.config.introspection_enabled,
            )
        finally:
            if client is not None:
                client.close()
        classification = classify(model)
        return augment(model, classification, self.mapping.augmentation, self.config.identity_predicate)

    def extract(self, augmented: Optional[AugmentedSchema] = None) -> RunReport:
        """Extract every type and write the run's artifacts to ``output_dir``."""
        started_at = datetime.now(timezone.utc).isoformat()
        augmented = augmented or self.prepare()
        engine = ExtractionEngine.from_config(
            self.config, self.queries, augmented.classification, transport=self._transport, sleep=self._sleep
        )
        engine.stages()

        serializer = GraphSerializer(
            augmented.schema_model,
            augmented.classification,
            self.config.output_dir,
            identity_predicate=self.config.identity_predicate,
            split_artifacts=self.config.split_artifacts,
            buffer_size=self.config.buffer_size,
            source=self.config.label,
        )
        try:
            outcomes = engine.run(serializer.consume)
        except BaseException:
            serializer.abort()
            raise

        failed = [name for name, o in outcomes.items() if o.failed]
        write_schema_documents(augmented, self.config.output_dir)
        run_manifest = serializer.close(
            metadata={
                "failed_types": failed,
                "schema_source": augmented.schema_model.source,
                "identity_predicate": self.config.identity_predicate,
            }
        )

        report = RunReport(
            run_id=run_manifest.run_id,
            source=self.config.label,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc).isoformat(),
            types=[self._type_report(o, serializer) for o in outcomes.values()],
            artifacts=[str(self.config.output_dir / a.path) for a in run_manifest.artifacts],
        )
        logger.info(report)
        return report

    @staticmethod
    def _type_report(outcome: TypeOutcome, serializer: GraphSerializer) -> TypeReport:
        return TypeReport(
            type_name=outcome.type_name,
            role=outcome.role,
            status=outcome.status,
            extracted=outcome.records,
            serialized=serializer.serialized[outcome.type_name],
            skipped=serializer.skipped[outcome.type_name],
            pages=outcome.pages,
            attempts=outcome.attempts,
            rate_limit_waits=outcome.rate_limit_waits,
            error=outcome.error,
        )

    def orchestrator(
        self,
        target: TargetStoreInterface,
        schema: Optional[AugmentedSchema],
        provision: bool = False,
    ) -> LoadOrchestrator:
        return LoadOrchestrator(
            target,
            schema=schema,
            policy=RetryPolicy.from_config(self.config),
            batch_size=self.config.load_batch_size,
            archive_dir=self.config.archive_dir,
            provision=provision,
        )

    async def load(
        self,
        target: TargetStoreInterface,
        run_dirs: Sequence[Path] = (),
        provision: bool = False,
    ) -> LoadResult:
        """Load the artifacts of one or more runs (default: ``output_dir``)."""
        run_dirs = list(run_dirs) or [self.config.output_dir]
        artifacts: list[LoadArtifact] = []
        for run_dir in run_dirs:
            artifacts.extend(load_run(run_dir))
        schema = read_augmented_schema(run_dirs[0])
        result = await self.orchestrator(target, schema, provision).load(artifacts)
        logger.info(result)
        return result

    async def run(self, target: TargetStoreInterface, provision: bool = False) -> RunReport:
        """Extract, then load unless a type failed."""
        report = await asyncio.to_thread(self.extract)
        if report.failed_types:
            logger.error("Not loading: extraction failed for %s", ", ".join(report.failed_types))
            return report
        result = await self.load(target, provision=provision)
        return report.model_copy(update={"load": result})
