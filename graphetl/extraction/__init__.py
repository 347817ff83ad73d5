"""Two-stage parallel extraction with bounded retries."""

from graphetl.extraction.barrier import WaitGroup
from graphetl.extraction.engine import (
    ExtractionCursor,
    ExtractionEngine,
    OutcomeStatus,
    Page,
    PageBatch,
    TypeExtractor,
    TypeOutcome,
)
from graphetl.extraction.retry import FailureType, RetryPolicy, RetryStats

__all__ = [
    "WaitGroup",
    "ExtractionCursor",
    "ExtractionEngine",
    "OutcomeStatus",
    "Page",
    "PageBatch",
    "TypeExtractor",
    "TypeOutcome",
    "FailureType",
    "RetryPolicy",
    "RetryStats",
]
