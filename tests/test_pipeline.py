"""End-to-end tests for MigrationPipeline against the fixture source.

This module verifies:
- prepare() acquires by introspection and falls back to the static schema
- extract() writes node and edge artifacts, manifests, the run manifest and
  the augmented schema documents, and reports per-type counts
- A type that keeps failing is reported, and run() then skips the load
- Loading two source instances into one store merges shared entities
- The run report summary names failed types
- Every reference in the artifacts points at an ID defined earlier, even
  with many workers and one record per page
"""

import gzip
import json
import threading
from pathlib import Path
from typing import Callable

import pytest

from graphetl.config import EtlConfig
from graphetl.errors import ArtifactIntegrityError, ConfigError, SchemaUnavailableError
from graphetl.extraction.engine import OutcomeStatus
from graphetl.identity import synthesize
from graphetl.load.memory import InMemoryTargetStore
from graphetl.load.orchestrator import LoadMode
from graphetl.load.target import LoadState
from graphetl.mapping import load_mapping
from graphetl.pipeline import SCHEMA_DQL, SCHEMA_JSON, SCHEMA_SDL, MigrationPipeline, read_augmented_schema
from graphetl.serialize.serializer import EDGES_ARTIFACT, NODES_ARTIFACT, RUN_MANIFEST
from graphetl.serialize.statements import parse_nquad
from graphetl.source.queries import QueryLibrary
from tests.conftest import FixtureSource, dataset, no_sleep


def _pipeline(config: EtlConfig, source: FixtureSource) -> MigrationPipeline:
    return MigrationPipeline(
        config,
        load_mapping(config.mapping_file),
        QueryLibrary.load(config.query_library),
        transport=source.transport(),
        sleep=no_sleep,
    )


class TestPrepare:
    """Tests for schema preparation."""

    def test_introspection(self, make_config: Callable[..., EtlConfig], source: FixtureSource) -> None:
        augmented = _pipeline(make_config(), source).prepare()
        assert augmented.schema_model.source == "introspection"
        assert set(augmented.classification.node_types) == {"Artifact", "Package", "PackageQualifier", "Vulnerability"}
        assert augmented.classification.identityless == {"PackageQualifier"}

    def test_falls_back_to_static_schema(self, make_config: Callable[..., EtlConfig], tmp_path: Path) -> None:
        source = FixtureSource(introspection=False)
        augmented = _pipeline(make_config(), source).prepare()
        assert augmented.schema_model.source == str(tmp_path / "schema.graphql")

    def test_no_schema_available(self, make_config: Callable[..., EtlConfig]) -> None:
        source = FixtureSource(introspection=False)
        with pytest.raises(SchemaUnavailableError):
            _pipeline(make_config(schema_file=None), source).prepare()

    def test_from_config_requires_mapping(self, make_config: Callable[..., EtlConfig]) -> None:
        with pytest.raises(ConfigError, match="GRAPHETL_MAPPING_FILE"):
            MigrationPipeline.from_config(make_config(mapping_file=None))


class TestExtract:
    """Tests for MigrationPipeline.extract."""

    def test_writes_run(self, make_config: Callable[..., EtlConfig], source: FixtureSource) -> None:
        config = make_config()
        report = _pipeline(config, source).extract()

        out = config.output_dir
        for name in (NODES_ARTIFACT, EDGES_ARTIFACT, RUN_MANIFEST, SCHEMA_JSON, SCHEMA_DQL, SCHEMA_SDL):
            assert (out / name).is_file(), name
        assert (out / (NODES_ARTIFACT + ".manifest.json")).is_file()

        assert report.succeeded
        assert report.failed_types == ()
        assert report.skipped_total == 0
        counts = {t.type_name: t.extracted for t in report.types}
        assert counts == {name: len(records) for name, records in dataset().items()}
        assert report.artifacts == [str(out / NODES_ARTIFACT), str(out / EDGES_ARTIFACT)]

        manifest = json.loads((out / RUN_MANIFEST).read_text())
        assert manifest["run_id"] == report.run_id
        assert manifest["metadata"]["failed_types"] == []
        assert [a["stage"] for a in manifest["artifacts"]] == ["node", "edge"]
        assert read_augmented_schema(out).classification == _pipeline(config, source).prepare().classification

    def test_edges_reference_earlier_nodes(self, make_config: Callable[..., EtlConfig], source: FixtureSource) -> None:
        """Test that every referenced ID is defined earlier in the nodes-then-edges stream."""
        config = make_config(parallelism=16, page_size=1)
        assert _pipeline(config, source).extract().succeeded

        defined: set[str] = set()
        undefined: list[str] = []
        for name in (NODES_ARTIFACT, EDGES_ARTIFACT):
            with gzip.open(config.output_dir / name, "rt", encoding="utf-8") as f:
                for line in f:
                    statement = parse_nquad(line)
                    if statement.object_id is not None and statement.object_id not in defined:
                        undefined.append(statement.object_id)
                    defined.add(statement.subject)
        assert undefined == []
        assert len(defined) > 0

    def test_failed_type_reported(self, make_config: Callable[..., EtlConfig], source: FixtureSource) -> None:
        """Test that a persistently failing Vulnerability query fails only that type."""
        source.fail("Vulnerability", status=500)
        config = make_config(max_attempts=3)
        report = _pipeline(config, source).extract()

        assert report.failed_types == ("Vulnerability",)
        assert not report.succeeded
        statuses = {t.type_name: t.status for t in report.types}
        assert statuses["CertifyVuln"] == OutcomeStatus.SUCCEEDED
        assert "Vulnerability" in report.summary()
        assert "FAILED" in report.summary()

        manifest = json.loads((config.output_dir / RUN_MANIFEST).read_text())
        assert manifest["metadata"]["failed_types"] == ["Vulnerability"]

    def test_missing_schema_document(self, tmp_path: Path) -> None:
        with pytest.raises(ArtifactIntegrityError):
            read_augmented_schema(tmp_path)


class TestRun:
    """Tests for extract-then-load runs."""

    async def test_run_into_memory(self, make_config: Callable[..., EtlConfig], source: FixtureSource) -> None:
        store = InMemoryTargetStore()
        report = await _pipeline(make_config(), source).run(store, provision=True)

        assert report.succeeded
        assert report.load is not None
        assert report.load.mode == LoadMode.BULK
        assert report.load.state == LoadState.LOADED
        assert store.schema is not None
        assert await store.count("Artifact") == 5
        assert await store.count("CertifyVuln") == 4

    async def test_extract_runs_off_the_event_loop(
        self, make_config: Callable[..., EtlConfig], source: FixtureSource
    ) -> None:
        """Test that the blocking extraction does not run on the event loop thread."""
        threads: list[int] = []

        class RecordingPipeline(MigrationPipeline):
            def extract(self, augmented=None):
                threads.append(threading.get_ident())
                return super().extract(augmented)

        config = make_config()
        pipeline = RecordingPipeline(
            config,
            load_mapping(config.mapping_file),
            QueryLibrary.load(config.query_library),
            transport=source.transport(),
            sleep=no_sleep,
        )
        report = await pipeline.run(InMemoryTargetStore())

        assert report.succeeded
        assert len(threads) == 1
        assert threads[0] != threading.get_ident()

    async def test_run_skips_load_after_failure(
        self, make_config: Callable[..., EtlConfig], source: FixtureSource
    ) -> None:
        source.fail("Package", status=500)
        store = InMemoryTargetStore()
        report = await _pipeline(make_config(), source).run(store)

        assert report.failed_types == ("Package",)
        assert report.load is None
        assert await store.count() == 0

    async def test_two_instances_merge(self, make_config: Callable[..., EtlConfig], tmp_path: Path) -> None:
        """Test that the same natural key from two instances yields one entity."""
        config_a = make_config(output_dir=tmp_path / "a", source_label="instance-a")
        config_b = make_config(output_dir=tmp_path / "b", source_label="instance-b")
        _pipeline(config_a, FixtureSource(records=dataset(instance="a"))).extract()
        _pipeline(config_b, FixtureSource(records=dataset(instance="b"))).extract()

        store = InMemoryTargetStore()
        result = await _pipeline(config_a, FixtureSource()).load(store, run_dirs=[config_a.output_dir, config_b.output_dir])

        assert result.succeeded
        assert result.mode == LoadMode.BULK
        assert len(result.artifacts) == 4
        assert await store.count("Artifact") == 5

        artifact = store.get(synthesize("Artifact", ["sha256", f"{0:064x}"]))
        assert artifact is not None
        assert artifact["Artifact.id"] == {"a-art-0", "b-art-0"}
