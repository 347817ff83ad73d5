"""Test fixtures: a fake GraphQL source and a matching mapping/query library.

This module provides:
- SCHEMA_SDL, a small GUAC-like schema with keyed nodes (Artifact, Package,
  Vulnerability), an identity-less embedded node (PackageQualifier) and two
  edge types (IsDependency, CertifyVuln)
- MAPPING and QUERIES, the mapping and query library for that schema
- FixtureSource, an in-process GraphQL server behind `httpx.MockTransport`
  that answers introspection, health checks and paginated list queries, and
  can be told to fail a type's requests
- Record factories and a ``make_config`` fixture writing the files a run needs

Both result shapes are exercised: Artifact, Package and IsDependency page as
Relay connections, Vulnerability and CertifyVuln as ``{records, nextCursor,
hasMore}``.
"""

import json
import re
import threading
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest
import yaml
from graphql import build_schema, get_introspection_query, graphql_sync

from graphetl.config import EtlConfig, load_config
from graphetl.extraction.engine import PageBatch
from graphetl.mapping import SourceMapping, parse_mapping
from graphetl.schema.acquire import to_schema_model
from graphetl.schema.augment import AugmentedSchema, augment
from graphetl.schema.classify import TypeRole, classify
from graphetl.serialize.serializer import GraphSerializer
from graphetl.source.queries import QueryLibrary

SOURCE_URL = "http://source.test/graphql"

SCHEMA_SDL = """
type Query {
  artifacts(after: ID, first: Int): ArtifactConnection!
  packages(after: ID, first: Int): PackageConnection!
  vulnerabilities(after: ID, first: Int): VulnerabilityPage!
  isDependencies(after: ID, first: Int): IsDependencyConnection!
  certifyVulns(after: ID, first: Int): CertifyVulnPage!
}

type PageInfo { endCursor: ID hasNextPage: Boolean! }

type Artifact { id: ID! algorithm: String! digest: String! }

type Package {
  id: ID!
  type: String!
  namespace: String!
  name: String!
  version: String!
  qualifiers: [PackageQualifier!]
}

type PackageQualifier { key: String! value: String! }

type Vulnerability { id: ID! type: String! vulnerabilityID: String! }

type IsDependency {
  id: ID!
  package: Package!
  dependencyPackage: Package!
  dependencyType: String!
  justification: String
}

type CertifyVuln {
  id: ID!
  package: Package!
  vulnerability: Vulnerability!
  origin: String
}

type ArtifactEdge { node: Artifact! }
type ArtifactConnection { edges: [ArtifactEdge!]! pageInfo: PageInfo! }
type PackageEdge { node: Package! }
type PackageConnection { edges: [PackageEdge!]! pageInfo: PageInfo! }
type IsDependencyEdge { node: IsDependency! }
type IsDependencyConnection { edges: [IsDependencyEdge!]! pageInfo: PageInfo! }
type VulnerabilityPage { records: [Vulnerability!]! nextCursor: ID hasMore: Boolean! }
type CertifyVulnPage { records: [CertifyVuln!]! nextCursor: ID hasMore: Boolean! }
"""

MAPPING: dict[str, Any] = {
    "types": {
        "Artifact": {"natural_key": ["algorithm", "digest"]},
        "Package": {"natural_key": ["type", "namespace", "name", "version"]},
        "PackageQualifier": {},
        "Vulnerability": {"natural_key": ["type", "vulnerabilityID"]},
        "IsDependency": {},
        "CertifyVuln": {},
    },
    "augmentation": [
        {"type": "Package", "field": "name", "intent": "search", "args": {"by": ["term", "regexp"]}},
        {"type": "Artifact", "field": "digest", "intent": "federation_key"},
    ],
}

# type name -> (root field, relay connection?)
ROOT_FIELDS: dict[str, tuple[str, bool]] = {
    "Artifact": ("artifacts", True),
    "Package": ("packages", True),
    "Vulnerability": ("vulnerabilities", False),
    "IsDependency": ("isDependencies", True),
    "CertifyVuln": ("certifyVulns", False),
}

_PACKAGE_REF = "{ type namespace name version }"

SELECTIONS: dict[str, str] = {
    "Artifact": "id algorithm digest",
    "Package": "id type namespace name version qualifiers { key value }",
    "Vulnerability": "id type vulnerabilityID",
    "IsDependency": f"id dependencyType justification package {_PACKAGE_REF} dependencyPackage {_PACKAGE_REF}",
    "CertifyVuln": f"id origin package {_PACKAGE_REF} vulnerability {{ type vulnerabilityID }}",
}


def _query_for(type_name: str) -> dict[str, Any]:
    root, relay = ROOT_FIELDS[type_name]
    if relay:
        body = f"edges {{ node {{ {SELECTIONS[type_name]} }} }} pageInfo {{ endCursor hasNextPage }}"
    else:
        body = f"records {{ {SELECTIONS[type_name]} }} nextCursor hasMore"
    return {
        "query": f"query {type_name}Page($after: ID, $first: Int) {{ {root}(after: $after, first: $first) {{ {body} }} }}",
        "result_path": root,
    }


QUERIES: dict[str, dict[str, Any]] = {name: _query_for(name) for name in ROOT_FIELDS}

_ROOT_FIELD_PATTERN = re.compile(r"\{\s*(\w+)\s*\(")


# --- Record factories ---


def artifact(i: int, instance: str = "a") -> dict[str, Any]:
    return {"id": f"{instance}-art-{i}", "algorithm": "sha256", "digest": f"{i:064x}"}


def package(i: int, instance: str = "a") -> dict[str, Any]:
    return {
        "id": f"{instance}-pkg-{i}",
        "type": "pypi",
        "namespace": "",
        "name": f"pkg{i}",
        "version": "1.0.0",
        "qualifiers": [{"key": "arch", "value": "x86_64"}] if i % 2 == 0 else [],
    }


def package_ref(i: int) -> dict[str, Any]:
    p = package(i)
    return {k: p[k] for k in ("type", "namespace", "name", "version")}


def vulnerability(i: int, instance: str = "a") -> dict[str, Any]:
    return {"id": f"{instance}-vuln-{i}", "type": "osv", "vulnerabilityID": f"GHSA-{i:04d}"}


def is_dependency(i: int, n_packages: int, instance: str = "a") -> dict[str, Any]:
    return {
        "id": f"{instance}-dep-{i}",
        "package": package_ref(i % n_packages),
        "dependencyPackage": package_ref((i + 1) % n_packages),
        "dependencyType": "DIRECT",
        "justification": "lockfile",
    }


def certify_vuln(i: int, n_packages: int, n_vulns: int, instance: str = "a") -> dict[str, Any]:
    v = vulnerability(i % n_vulns)
    return {
        "id": f"{instance}-cv-{i}",
        "package": package_ref(i % n_packages),
        "vulnerability": {"type": v["type"], "vulnerabilityID": v["vulnerabilityID"]},
        "origin": "osv-scanner",
    }


def dataset(
    artifacts: int = 5,
    packages: int = 4,
    vulnerabilities: int = 3,
    dependencies: int = 4,
    certifications: int = 4,
    instance: str = "a",
) -> dict[str, list[dict[str, Any]]]:
    """Records per type for one source instance."""
    return {
        "Artifact": [artifact(i, instance) for i in range(artifacts)],
        "Package": [package(i, instance) for i in range(packages)],
        "Vulnerability": [vulnerability(i, instance) for i in range(vulnerabilities)],
        "IsDependency": [is_dependency(i, packages, instance) for i in range(dependencies)],
        "CertifyVuln": [certify_vuln(i, packages, vulnerabilities, instance) for i in range(certifications)],
    }


# --- Fake source ---


class FixtureSource:
    """In-process GraphQL source serving introspection and paginated records.

    Safe to call from several extraction workers at once.

    Example:
        ```python
        source = FixtureSource(dataset())
        source.fail("Vulnerability", status=500)
        client = SourceClient(SOURCE_URL, transport=source.transport())
        ```
    """

    def __init__(
        self,
        records: Optional[dict[str, list[dict[str, Any]]]] = None,
        sdl: str = SCHEMA_SDL,
        introspection: bool = True,
    ):
        self.records = records if records is not None else dataset()
        self.schema = build_schema(sdl)
        self.introspection = introspection
        self.calls: Counter[str] = Counter()
        self.requests: list[dict[str, Any]] = []
        self.cursor_override: dict[str, Callable[[int], Optional[str]]] = {}
        self._failures: dict[str, list[tuple[int, dict[str, str]]]] = defaultdict(list)
        self._lock = threading.Lock()
        self._types_by_root = {root: name for name, (root, _) in ROOT_FIELDS.items()}

    def fail(self, type_name: str, status: int = 500, times: int = -1, headers: Optional[dict[str, str]] = None) -> None:
        """Answer the next ``times`` requests for a type (-1: all of them) with ``status``."""
        with self._lock:
            self._failures[type_name].append((times, {**(headers or {}), "x-status": str(status)}))

    def _take_failure(self, type_name: str) -> Optional[tuple[int, dict[str, str]]]:
        with self._lock:
            pending = self._failures.get(type_name)
            if not pending:
                return None
            times, headers = pending[0]
            if times > 0:
                times -= 1
                if times == 0:
                    pending.pop(0)
                else:
                    pending[0] = (times, headers)
            status = int(headers["x-status"])
            return status, {k: v for k, v in headers.items() if k != "x-status"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        query: str = payload["query"]
        variables: dict[str, Any] = payload.get("variables") or {}

        if "__schema" in query:
            if not self.introspection:
                return httpx.Response(200, json={"errors": [{"message": "introspection is disabled"}]})
            result = graphql_sync(self.schema, get_introspection_query(descriptions=False))
            return httpx.Response(200, json={"data": result.data})
        if "__typename" in query:
            return httpx.Response(200, json={"data": {"__typename": "Query"}})

        match = _ROOT_FIELD_PATTERN.search(query)
        if match is None or match.group(1) not in self._types_by_root:
            return httpx.Response(200, json={"errors": [{"message": "unknown query"}]})
        root = match.group(1)
        type_name = self._types_by_root[root]

        with self._lock:
            self.calls[type_name] += 1
            self.requests.append({"type": type_name, "variables": variables})

        failure = self._take_failure(type_name)
        if failure is not None:
            status, headers = failure
            return httpx.Response(status, headers=headers, json={"errors": [{"message": f"HTTP {status}"}]})

        return httpx.Response(200, json={"data": {root: self._page(type_name, variables)}})

    def _page(self, type_name: str, variables: dict[str, Any]) -> dict[str, Any]:
        after = variables.get("after")
        first = int(variables.get("first") or 10)
        start = int(after.split(":", 1)[1]) if after else 0
        rows = self.records.get(type_name, [])[start : start + first]
        end = start + len(rows)
        has_more = end < len(self.records.get(type_name, []))
        cursor: Optional[str] = f"c:{end}"
        if type_name in self.cursor_override:
            cursor = self.cursor_override[type_name](start)
        if ROOT_FIELDS[type_name][1]:
            return {
                "edges": [{"node": row} for row in rows],
                "pageInfo": {"endCursor": cursor, "hasNextPage": has_more},
            }
        return {"records": rows, "nextCursor": cursor, "hasMore": has_more}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def no_sleep(seconds: float) -> None:
    return None


async def no_async_sleep(seconds: float) -> None:
    return None


def write_run(augmented: AugmentedSchema, output_dir: Path, instance: str = "a", **counts: int) -> Path:
    """Serialize one fixture dataset into ``output_dir`` the way an extraction run does."""
    records = dataset(instance=instance, **counts)
    serializer = GraphSerializer(augmented.schema_model, augmented.classification, output_dir, source=instance)
    for role, type_names in (
        (TypeRole.NODE, augmented.classification.node_types),
        (TypeRole.EDGE, augmented.classification.edge_types),
    ):
        for type_name in type_names:
            if records.get(type_name):
                serializer.consume(PageBatch(type_name, role, tuple(records[type_name])))
    serializer.close()
    return output_dir


# --- Fixtures ---


@pytest.fixture
def source() -> FixtureSource:
    return FixtureSource()


@pytest.fixture
def mapping() -> SourceMapping:
    return parse_mapping(MAPPING)


@pytest.fixture
def queries() -> QueryLibrary:
    return QueryLibrary.from_dict(QUERIES)


@pytest.fixture
def augmented(mapping: SourceMapping) -> AugmentedSchema:
    model = to_schema_model(build_schema(SCHEMA_SDL), mapping, source="test")
    return augment(model, classify(model), mapping.augmentation)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., EtlConfig]:
    """Write mapping, queries and schema files and build an `EtlConfig` for them."""
    (tmp_path / "mapping.yaml").write_text(yaml.safe_dump(MAPPING))
    (tmp_path / "queries.yaml").write_text(yaml.safe_dump(QUERIES))
    (tmp_path / "schema.graphql").write_text(SCHEMA_SDL)

    def _make(**overrides: Any) -> EtlConfig:
        values: dict[str, Any] = {
            "source_url": SOURCE_URL,
            "schema_file": tmp_path / "schema.graphql",
            "mapping_file": tmp_path / "mapping.yaml",
            "query_library": tmp_path / "queries.yaml",
            "output_dir": tmp_path / "build",
            "bulk_output_dir": tmp_path / "build" / "out",
            "parallelism": 4,
            "page_size": 2,
            "backoff_base_seconds": 0.0,
            "jitter_factor": 0.0,
        }
        values.update(overrides)
        return load_config(env={}, **values)

    return _make
