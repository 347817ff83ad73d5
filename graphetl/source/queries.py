"""Library of pre-defined, paginated list queries, one per source type.

The library is a YAML file keyed by type name::

    Artifact:
      query: |
        query ArtifactPage($after: ID, $first: Int) {
          artifactsList(artifactSpec: {}, after: $after, first: $first) {
            edges { node { algorithm digest } }
            pageInfo { endCursor hasNextPage }
          }
        }
      result_path: artifactsList
      page_size: 200

Two result shapes are accepted at ``result_path``:

- ``{records: [...], nextCursor: "...", hasMore: true}``
- a Relay connection: ``{edges: [{node: {...}}], pageInfo: {endCursor, hasNextPage}}``

Pagination is always cursor based; offsets drift under concurrent writes.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from graphetl.errors import MappingError, SourceProtocolError

logger = logging.getLogger(__name__)


class PageQuery(BaseModel):
    """One type's list query.

    Attributes:
        type_name: Source type the query returns.
        query: GraphQL document accepting a cursor and a page-size variable.
        result_path: Dotted path of the page object inside ``data``.
        page_size: Page size override; the run default applies when None.
        cursor_variable: Name of the cursor variable.
        page_size_variable: Name of the page-size variable.
        variables: Extra static variables sent with every page request.
    """

    model_config = {"frozen": True}

    type_name: str
    query: str
    result_path: str
    page_size: Optional[int] = Field(None, ge=1)
    cursor_variable: str = "after"
    page_size_variable: str = "first"
    variables: dict[str, Any] = Field(default_factory=dict)

    def variables_for(self, cursor: Optional[str], default_page_size: int) -> dict[str, Any]:
        variables = dict(self.variables)
        variables[self.page_size_variable] = self.page_size or default_page_size
        variables[self.cursor_variable] = cursor
        return variables


class PageResult(BaseModel):
    """Records of one page plus the pagination state the server reported."""

    model_config = {"frozen": True}

    records: tuple[dict[str, Any], ...]
    next_cursor: Optional[str]
    has_more: bool


def _walk(data: Any, path: str) -> Any:
    node = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            raise SourceProtocolError(f"Response has no '{path}' (missing '{part}')")
        node = node[part]
    return node


def parse_page(data: dict[str, Any], query: PageQuery) -> PageResult:
    """Interpret a query response as one page of records.

    Raises:
        SourceProtocolError: If the response matches neither accepted shape.
    """
    page = _walk(data, query.result_path)
    if not isinstance(page, dict):
        raise SourceProtocolError(f"'{query.result_path}' is not an object")

    if "edges" in page:
        edges = page.get("edges") or []
        info = page.get("pageInfo") or {}
        nodes = [edge.get("node") for edge in edges if isinstance(edge, dict)]
        records = [node for node in nodes if node is not None]
        if len(records) < len(nodes):
            logger.warning("Skipping %d null node(s) in '%s'", len(nodes) - len(records), query.result_path)
        next_cursor = info.get("endCursor")
        has_more = bool(info.get("hasNextPage"))
    elif "records" in page:
        records = page.get("records") or []
        next_cursor = page.get("nextCursor")
        has_more = bool(page.get("hasMore"))
    else:
        raise SourceProtocolError(f"'{query.result_path}' has neither 'records' nor 'edges'")

    if not all(isinstance(r, dict) for r in records):
        raise SourceProtocolError(f"'{query.result_path}' contains non-object records")
    if next_cursor is not None and not isinstance(next_cursor, str):
        next_cursor = str(next_cursor)
    return PageResult(records=tuple(records), next_cursor=next_cursor, has_more=has_more)


class QueryLibrary:
    """Per-type list queries, loaded once and read-only afterwards."""

    def __init__(self, queries: dict[str, PageQuery]):
        self._queries = dict(queries)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._queries

    def get(self, type_name: str) -> PageQuery:
        try:
            return self._queries[type_name]
        except KeyError:
            raise MappingError(f"No list query defined for type {type_name}") from None

    @property
    def type_names(self) -> tuple[str, ...]:
        return tuple(self._queries)

    @classmethod
    def from_dict(cls, data: Any, origin: str = "<query library>") -> "QueryLibrary":
        if not isinstance(data, dict):
            raise MappingError(f"{origin}: top level must map type names to queries")
        queries: dict[str, PageQuery] = {}
        for type_name, entry in data.items():
            if not isinstance(entry, dict):
                raise MappingError(f"{origin}: entry for {type_name} must be a mapping")
            try:
                queries[type_name] = PageQuery(type_name=type_name, **entry)
            except (ValidationError, TypeError) as e:
                raise MappingError(f"{origin}: invalid query for {type_name}: {e}") from e
        return cls(queries)

    @classmethod
    def load(cls, path: Path) -> "QueryLibrary":
        try:
            data = yaml.safe_load(path.read_text())
        except (OSError, yaml.YAMLError) as e:
            raise MappingError(f"Cannot read query library {path}: {e}") from e
        return cls.from_dict(data, origin=str(path))
