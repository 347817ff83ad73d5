"""Tests for the two-stage extraction engine.

This module verifies:
- WaitGroup counting and timeouts
- Every record of every extracted type is delivered exactly once, for any
  pool size
- Every Node batch reaches the consumer before any Edge batch
- A type whose requests keep failing is marked failed after max_attempts
  while its siblings complete, and Stage 2 still runs
- 429 responses are waited out without failing the type
- A cursor that does not advance is a protocol error for that type
- A consumer exception cancels the run and propagates
- Missing list queries are detected before any request is made
"""

import threading
from collections import Counter
from typing import Optional

import pytest

from graphetl.errors import MappingError
from graphetl.extraction.barrier import WaitGroup
from graphetl.extraction.engine import (
    ExtractionCursor,
    ExtractionEngine,
    OutcomeStatus,
    PageBatch,
    TypeExtractor,
)
from graphetl.extraction.retry import RetryPolicy
from graphetl.schema.augment import AugmentedSchema
from graphetl.schema.classify import TypeRole
from graphetl.source.client import SourceClient
from graphetl.source.queries import QueryLibrary
from tests.conftest import QUERIES, SOURCE_URL, FixtureSource, dataset, no_sleep


def _engine(
    source: FixtureSource,
    augmented: AugmentedSchema,
    parallelism: int = 4,
    queries: Optional[dict] = None,
    page_size: int = 2,
    queue_size: int = 4,
) -> ExtractionEngine:
    return ExtractionEngine(
        client_factory=lambda: SourceClient(SOURCE_URL, transport=source.transport()),
        queries=QueryLibrary.from_dict(queries if queries is not None else QUERIES),
        classification=augmented.classification,
        policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.0, jitter_factor=0.0),
        parallelism=parallelism,
        queue_size=queue_size,
        page_size=page_size,
        sleep=no_sleep,
    )


class Collector:
    """Consumer remembering every batch in arrival order."""

    def __init__(self) -> None:
        self.batches: list[PageBatch] = []
        self.thread_ids: set[int] = set()

    def __call__(self, batch: PageBatch) -> None:
        self.thread_ids.add(threading.get_ident())
        self.batches.append(batch)

    def ids(self, type_name: str) -> list[str]:
        return [r["id"] for b in self.batches if b.type_name == type_name for r in b.records]


class TestWaitGroup:
    """Tests for the stage barrier."""

    def test_wait_returns_when_all_done(self) -> None:
        wg = WaitGroup()
        wg.add(3)
        workers = [threading.Thread(target=wg.done) for _ in range(3)]
        for w in workers:
            w.start()
        assert wg.wait(timeout=5)
        assert wg.pending == 0

    def test_timeout(self) -> None:
        wg = WaitGroup()
        wg.add()
        assert not wg.wait(timeout=0.01)
        wg.done()
        assert wg.wait(timeout=0)

    def test_negative_counter(self) -> None:
        with pytest.raises(ValueError):
            WaitGroup().done()


class TestTypeExtractor:
    """Tests for single-page extraction."""

    def test_pages_until_exhausted(self, source: FixtureSource) -> None:
        with SourceClient(SOURCE_URL, transport=source.transport()) as client:
            extractor = TypeExtractor(client, QueryLibrary.from_dict(QUERIES), RetryPolicy(), page_size=2)
            cursor = ExtractionCursor()
            seen = []
            while not cursor.exhausted:
                page = extractor.extract("Artifact", cursor)
                seen.extend(r["id"] for r in page.records)
                cursor = page.cursor
        assert seen == [f"a-art-{i}" for i in range(5)]
        assert cursor.pages == 3

    def test_exhausted_cursor_rejected(self, source: FixtureSource) -> None:
        with SourceClient(SOURCE_URL, transport=source.transport()) as client:
            extractor = TypeExtractor(client, QueryLibrary.from_dict(QUERIES), RetryPolicy())
            with pytest.raises(ValueError):
                extractor.extract("Artifact", ExtractionCursor(exhausted=True))


class TestExtractionEngine:
    """Tests for ExtractionEngine.run."""

    @pytest.mark.parametrize("parallelism", [1, 4, 16])
    def test_completeness(self, source: FixtureSource, augmented: AugmentedSchema, parallelism: int) -> None:
        """Test that every record arrives exactly once regardless of pool size."""
        collector = Collector()
        outcomes = _engine(source, augmented, parallelism=parallelism).run(collector)

        expected = dataset()
        for type_name, records in expected.items():
            assert sorted(collector.ids(type_name)) == sorted(r["id"] for r in records)
            assert outcomes[type_name].status == OutcomeStatus.SUCCEEDED
            assert outcomes[type_name].records == len(records)
        assert "PackageQualifier" not in outcomes

    def test_nodes_before_edges(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        collector = Collector()
        _engine(source, augmented, parallelism=8, page_size=1).run(collector)
        roles = [b.role for b in collector.batches]
        first_edge = roles.index(TypeRole.EDGE)
        assert TypeRole.NODE not in roles[first_edge:]
        assert roles.count(TypeRole.NODE) == 12

    def test_consumer_runs_on_calling_thread(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        collector = Collector()
        _engine(source, augmented).run(collector)
        assert collector.thread_ids == {threading.get_ident()}

    def test_persistent_server_error_fails_one_type(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        """Test that Vulnerability fails after 3 attempts while the other types complete."""
        source.fail("Vulnerability", status=500)
        collector = Collector()
        outcomes = _engine(source, augmented).run(collector)

        failed = outcomes["Vulnerability"]
        assert failed.status == OutcomeStatus.FAILED
        assert failed.attempts == 3
        assert "500" in (failed.error or "")
        assert source.calls["Vulnerability"] == 3

        for type_name in ("Artifact", "Package", "IsDependency", "CertifyVuln"):
            assert outcomes[type_name].status == OutcomeStatus.SUCCEEDED
        assert collector.ids("Vulnerability") == []
        assert len(collector.ids("CertifyVuln")) == 4

    def test_transient_errors_recover(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        source.fail("Package", status=503, times=2)
        outcomes = _engine(source, augmented).run(Collector())
        assert outcomes["Package"].status == OutcomeStatus.SUCCEEDED
        assert outcomes["Package"].retries == 2

    def test_rate_limited_type_waits(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        source.fail("Artifact", status=429, times=5, headers={"Retry-After": "0"})
        outcomes = _engine(source, augmented).run(Collector())
        assert outcomes["Artifact"].status == OutcomeStatus.SUCCEEDED
        assert outcomes["Artifact"].rate_limit_waits == 5
        assert outcomes["Artifact"].retries == 0

    def test_permanent_error_is_not_retried(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        source.fail("IsDependency", status=400)
        outcomes = _engine(source, augmented).run(Collector())
        assert outcomes["IsDependency"].status == OutcomeStatus.FAILED
        assert source.calls["IsDependency"] == 1

    def test_non_advancing_cursor(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        source.cursor_override["Package"] = lambda start: "c:0"
        outcomes = _engine(source, augmented).run(Collector())
        assert outcomes["Package"].status == OutcomeStatus.FAILED
        assert "did not advance" in (outcomes["Package"].error or "")
        assert outcomes["Artifact"].status == OutcomeStatus.SUCCEEDED

    def test_consumer_error_propagates(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        def consumer(batch: PageBatch) -> None:
            raise OSError("disk full")

        with pytest.raises(OSError, match="disk full"):
            _engine(source, augmented, page_size=1, queue_size=1).run(consumer)

    def test_missing_query_for_edge(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        queries = {k: v for k, v in QUERIES.items() if k != "CertifyVuln"}
        with pytest.raises(MappingError, match="CertifyVuln"):
            _engine(source, augmented, queries=queries).run(Collector())
        assert sum(source.calls.values()) == 0

    def test_stages(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        nodes, edges = _engine(source, augmented).stages()
        assert nodes == ("Artifact", "Package", "Vulnerability")
        assert edges == ("IsDependency", "CertifyVuln")

    def test_page_requests_carry_cursor(self, source: FixtureSource, augmented: AugmentedSchema) -> None:
        _engine(source, augmented).run(Collector())
        cursors = Counter(r["variables"].get("after") for r in source.requests if r["type"] == "Artifact")
        assert cursors == Counter({None: 1, "c:2": 1, "c:4": 1})
