"""GraphQL source client and list-query library."""

from graphetl.source.client import SourceClient
from graphetl.source.queries import PageQuery, PageResult, QueryLibrary

__all__ = ["SourceClient", "PageQuery", "PageResult", "QueryLibrary"]
