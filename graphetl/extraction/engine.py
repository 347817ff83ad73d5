"""Two-stage parallel extraction.

Every declared type is paged through its list query by one worker of a
bounded thread pool. Stage 1 runs all Node types concurrently; a `WaitGroup`
barrier holds Stage 2 (all Edge types) until every Stage 1 worker has
finished, successfully or not. Workers push each page into one bounded
queue; the caller's thread consumes it, so a slow consumer (disk) blocks
the producers instead of buffering unboundedly.

Because a single FIFO queue is used and Stage 2 is only submitted after the
barrier, the consumer sees every Node batch before any Edge batch.

Failure isolation: a type whose request exhausts its retries (or fails
permanently) is recorded as failed in its `TypeOutcome`. Its siblings keep
running and the barrier still counts it as finished.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel

from graphetl.config import EtlConfig
from graphetl.errors import MappingError, SourceError, SourceProtocolError
from graphetl.extraction.barrier import WaitGroup
from graphetl.extraction.retry import RetryPolicy, RetryStats
from graphetl.schema.classify import Classification, TypeRole
from graphetl.source.client import SourceClient
from graphetl.source.queries import QueryLibrary, parse_page

logger = logging.getLogger(__name__)


class ExtractionCursor(BaseModel):
    """Pagination state of one type. Owned by the worker extracting that type.

    Attributes:
        page_token: Opaque cursor returned by the source; None before the first page.
        exhausted: True once the source reported no further pages.
        pages: Pages fetched so far.
    """

    model_config = {"frozen": True}

    page_token: Optional[str] = None
    exhausted: bool = False
    pages: int = 0

    def advance(self, page_token: Optional[str], exhausted: bool) -> "ExtractionCursor":
        return ExtractionCursor(page_token=page_token, exhausted=exhausted, pages=self.pages + 1)


class Page(BaseModel):
    """One page of records plus the cursor to continue from."""

    model_config = {"frozen": True}

    type_name: str
    records: tuple[dict[str, Any], ...]
    cursor: ExtractionCursor

    @property
    def exhausted(self) -> bool:
        return self.cursor.exhausted


class TypeExtractor:
    """Fetches single pages of a type's list query.

    Example:
        ```python
        extractor = TypeExtractor(client, queries, RetryPolicy())
        cursor = ExtractionCursor()
        while not cursor.exhausted:
            page = extractor.extract("Artifact", cursor)
            cursor = page.cursor
        ```
    """

    def __init__(
        self,
        client: SourceClient,
        queries: QueryLibrary,
        policy: RetryPolicy,
        page_size: int = 500,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._queries = queries
        self._policy = policy
        self._page_size = page_size
        self._sleep = sleep

    def extract(self, type_name: str, cursor: ExtractionCursor, stats: Optional[RetryStats] = None) -> Page:
        """Fetch the page after ``cursor``.

        Raises:
            SourceError: After retries are exhausted, or on a permanent failure.
            SourceProtocolError: If the source claims more pages but does not
                advance the cursor.
        """
        if cursor.exhausted:
            raise ValueError(f"Cursor for {type_name} is already exhausted")
        query = self._queries.get(type_name)
        variables = query.variables_for(cursor.page_token, self._page_size)
        data = self._policy.call(
            lambda: self._client.execute(query.query, variables),
            stats=stats,
            sleep=self._sleep,
            description=f"{type_name} page {cursor.pages + 1}",
        )
        result = parse_page(data, query)

        exhausted = not result.has_more
        if not exhausted:
            if result.next_cursor is None:
                raise SourceProtocolError(f"{type_name}: source reports more pages but returned no cursor")
            if result.next_cursor == cursor.page_token:
                raise SourceProtocolError(f"{type_name}: cursor {result.next_cursor!r} did not advance")
        return Page(
            type_name=type_name,
            records=result.records,
            cursor=cursor.advance(result.next_cursor, exhausted),
        )


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TypeOutcome(BaseModel):
    """How one type's extraction ended."""

    model_config = {"frozen": True}

    type_name: str
    role: TypeRole
    status: OutcomeStatus
    records: int = 0
    pages: int = 0
    attempts: int = 0
    retries: int = 0
    rate_limit_waits: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


@dataclass(frozen=True)
class PageBatch:
    """Unit of work handed from a worker to the consumer."""

    type_name: str
    role: TypeRole
    records: tuple[dict[str, Any], ...]


_END_OF_STREAM = object()


class ExtractionEngine:
    """Runs the two extraction stages and streams page batches to a consumer.

    Args:
        client_factory: Creates one `SourceClient` per worker task.
        queries: List query of every type to extract.
        classification: Node/Edge roles deciding the stage of each type.
        policy: Retry policy applied to every page request.
        parallelism: Worker pool size.
        queue_size: Capacity of the batch queue, in pages.
        page_size: Default page size.
        sleep: Backoff sleep, replaceable in tests.
    """

    def __init__(
        self,
        client_factory: Callable[[], SourceClient],
        queries: QueryLibrary,
        classification: Classification,
        policy: Optional[RetryPolicy] = None,
        parallelism: int = 4,
        queue_size: int = 64,
        page_size: int = 500,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self._client_factory = client_factory
        self._queries = queries
        self._classification = classification
        self._policy = policy or RetryPolicy()
        self._parallelism = parallelism
        self._queue_size = queue_size
        self._page_size = page_size
        self._sleep = sleep
        self._cancelled = threading.Event()

    @classmethod
    def from_config(
        cls,
        config: EtlConfig,
        queries: QueryLibrary,
        classification: Classification,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ExtractionEngine":
        config.require("source_url")
        return cls(
            client_factory=lambda: SourceClient.from_config(config, transport=transport),
            queries=queries,
            classification=classification,
            policy=RetryPolicy.from_config(config),
            parallelism=config.parallelism,
            queue_size=config.queue_size,
            page_size=config.page_size,
            sleep=sleep,
        )

    def stages(self) -> tuple[tuple[str, ...], tuple[str, ...]]:
        """Types extracted in Stage 1 and Stage 2.

        Keyed Node types and Edge types must have a list query. Node types
        without identity are extracted only when the library lists them;
        otherwise they exist only embedded in other records.

        Raises:
            MappingError: If a required list query is missing.
        """
        c = self._classification
        missing = [
            name
            for name in (*c.node_types, *c.edge_types)
            if (c.is_edge(name) or c.has_identity(name)) and name not in self._queries
        ]
        if missing:
            raise MappingError(f"No list query defined for type(s): {', '.join(missing)}")
        node_stage = tuple(name for name in c.node_types if name in self._queries)
        edge_stage = tuple(name for name in c.edge_types if name in self._queries)
        return node_stage, edge_stage

    def run(self, consumer: Callable[[PageBatch], None]) -> dict[str, TypeOutcome]:
        """Extract every type, calling ``consumer`` for each page on this thread.

        Returns:
            Outcome per type, Stage 1 types first.

        Raises:
            MappingError: If a list query is missing (before any worker starts).
            Exception: Whatever ``consumer`` raises; workers are cancelled
                and drained before it propagates.
        """
        node_stage, edge_stage = self.stages()
        batches: "queue.Queue[Any]" = queue.Queue(maxsize=self._queue_size)
        outcomes: dict[str, TypeOutcome] = {}
        self._cancelled.clear()

        logger.info(
            "Extracting %d node type(s), then %d edge type(s), with %d worker(s)",
            len(node_stage),
            len(edge_stage),
            self._parallelism,
        )

        with ThreadPoolExecutor(max_workers=self._parallelism, thread_name_prefix="extract") as pool:
            coordinator = threading.Thread(
                target=self._coordinate,
                args=(pool, batches, ((TypeRole.NODE, node_stage), (TypeRole.EDGE, edge_stage)), outcomes),
                name="extract-coordinator",
                daemon=True,
            )
            coordinator.start()
            try:
                while True:
                    item = batches.get()
                    if item is _END_OF_STREAM:
                        break
                    consumer(item)
            except BaseException:
                self._cancelled.set()
                while batches.get() is not _END_OF_STREAM:
                    pass
                raise
            finally:
                coordinator.join()

        failed = [name for name, outcome in outcomes.items() if outcome.failed]
        if failed:
            logger.error("Extraction failed for %d type(s): %s", len(failed), ", ".join(failed))
        return outcomes

    def _coordinate(
        self,
        pool: ThreadPoolExecutor,
        batches: "queue.Queue[Any]",
        stages: tuple[tuple[TypeRole, tuple[str, ...]], ...],
        outcomes: dict[str, TypeOutcome],
    ) -> None:
        try:
            for role, type_names in stages:
                if self._cancelled.is_set():
                    break
                barrier = WaitGroup()
                futures: list[tuple[str, Future]] = []
                for type_name in type_names:
                    barrier.add()
                    futures.append((type_name, pool.submit(self._extract_type, type_name, role, batches, barrier)))
                barrier.wait()
                for type_name, future in futures:
                    outcomes[type_name] = future.result()
                logger.info("Stage %s finished: %d type(s)", role.value, len(type_names))
        finally:
            batches.put(_END_OF_STREAM)

    def _extract_type(
        self,
        type_name: str,
        role: TypeRole,
        batches: "queue.Queue[Any]",
        barrier: WaitGroup,
    ) -> TypeOutcome:
        stats = RetryStats()
        cursor = ExtractionCursor()
        records = 0
        status = OutcomeStatus.SUCCEEDED
        error: Optional[str] = None
        try:
            with self._client_factory() as client:
                extractor = TypeExtractor(client, self._queries, self._policy, self._page_size, self._sleep)
                while not cursor.exhausted:
                    if self._cancelled.is_set():
                        raise SourceError("extraction cancelled")
                    page = extractor.extract(type_name, cursor, stats)
                    cursor = page.cursor
                    if page.records:
                        batches.put(PageBatch(type_name=type_name, role=role, records=page.records))
                        records += len(page.records)
            logger.info("Extracted %d %s record(s) in %d page(s)", records, type_name, cursor.pages)
        except SourceError as e:
            status, error = OutcomeStatus.FAILED, f"{type(e).__name__}: {e}"
            logger.error("Extraction of %s failed after %d attempt(s): %s", type_name, stats.attempts, e)
        except Exception as e:
            status, error = OutcomeStatus.FAILED, f"{type(e).__name__}: {e}"
            logger.exception("Unexpected error extracting %s", type_name)
        finally:
            barrier.done()
        return TypeOutcome(
            type_name=type_name,
            role=role,
            status=status,
            records=records,
            pages=cursor.pages,
            attempts=stats.attempts,
            retries=stats.retries,
            rate_limit_waits=stats.rate_limit_waits,
            error=error,
        )
