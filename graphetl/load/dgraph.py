"""Dgraph target store.

- State detection: a DQL query on ``/query`` for any node carrying the
  identity predicate.
- Bulk path: the ``dgraph bulk`` command against Zero, with Alpha stopped.
  The posting directories end up under ``bulk_output_dir``; copying
  ``out/0/p`` into Alpha's data directory remains an operator step.
- Incremental path: DQL upsert blocks on ``/mutate?commitNow=true``. Every
  blank node of a batch is bound to a query variable matching its identity
  value, so existing entities are updated and missing ones created.
- Provisioning: the DQL schema on ``/alter`` and, optionally, the GraphQL
  SDL on ``/admin/schema``.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import httpx

from graphetl.config import EtlConfig
from graphetl.errors import BulkLoadError, LoadError
from graphetl.load.target import LoadState, TargetStoreInterface
from graphetl.schema.augment import AugmentedSchema
from graphetl.serialize.statements import GraphStatement, escape_literal

logger = logging.getLogger(__name__)

BULK_SCHEMA_FILE = "bulk.schema"


def _dql_string(value: str) -> str:
    return '"' + escape_literal(value) + '"'


def build_upsert(statements: Sequence[GraphStatement], identity_predicate: str = "xid") -> str:
    """Render a batch as one DQL upsert block.

    Example output::

        upsert {
          query {
            v0 as var(func: eq(xid, "QXJ0aWZhY3Q..."))
          }
          mutation {
            set {
              uid(v0) <xid> "QXJ0aWZhY3Q..." .
              uid(v0) <Artifact.digest> "f0e0" .
            }
          }
        }
    """
    variables: dict[str, str] = {}

    def var(label: str) -> str:
        if label not in variables:
            variables[label] = f"v{len(variables)}"
        return variables[label]

    lines: list[str] = []
    for s in statements:
        subject = f"uid({var(s.subject)})"
        if s.object_id is not None:
            obj = f"uid({var(s.object_id)})"
        else:
            obj = _dql_string(s.literal)  # type: ignore[arg-type]
            if s.datatype:
                obj += f"^^<{s.datatype}>"
        lines.append(f"      {subject} <{s.predicate}> {obj} .")
    for label, name in variables.items():
        lines.append(f"      uid({name}) <{identity_predicate}> {_dql_string(label)} .")

    queries = [
        f"    {name} as var(func: eq({identity_predicate}, {_dql_string(label)}))" for label, name in variables.items()
    ]
    return "\n".join(
        [
            "upsert {",
            "  query {",
            *queries,
            "  }",
            "  mutation {",
            "    set {",
            *lines,
            "    }",
            "  }",
            "}",
        ]
    )


class DgraphTargetStore(TargetStoreInterface):
    """Dgraph cluster reached through Alpha's HTTP API and the bulk loader CLI.

    Args:
        url: Alpha HTTP endpoint, e.g. ``http://localhost:8080``.
        identity_predicate: Predicate holding canonical IDs.
        zero: Zero address passed to ``dgraph bulk --zero``.
        command: Dgraph executable.
        bulk_output_dir: ``--out`` directory of the bulk loader.
        timeout: HTTP timeout in seconds.
        transport: Optional httpx transport (tests use `httpx.MockTransport`).
        runner: Runs the bulk command; defaults to `subprocess.run`.
    """

    def __init__(
        self,
        url: str = "http://localhost:8080",
        identity_predicate: str = "xid",
        zero: str = "localhost:5080",
        command: str = "dgraph",
        bulk_output_dir: Path = Path("build/out"),
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.url = url.rstrip("/")
        self.identity_predicate = identity_predicate
        self.zero = zero
        self.command = command
        self.bulk_output_dir = bulk_output_dir
        self._runner = runner
        self._client = httpx.AsyncClient(base_url=self.url, timeout=timeout, transport=transport)

    @classmethod
    def from_config(
        cls,
        config: EtlConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "DgraphTargetStore":
        return cls(
            url=config.dgraph_url,
            identity_predicate=config.identity_predicate,
            zero=config.dgraph_zero,
            command=config.dgraph_command,
            bulk_output_dir=config.bulk_output_dir,
            timeout=config.request_timeout,
            transport=transport,
        )

    async def _post(self, path: str, content: str, content_type: str, params: Optional[dict[str, str]] = None) -> Any:
        try:
            response = await self._client.post(
                path, content=content.encode("utf-8"), headers={"Content-Type": content_type}, params=params
            )
        except httpx.HTTPError as e:
            raise LoadError(f"Dgraph request to {path} failed: {e}") from e
        if response.status_code >= 400:
            raise LoadError(f"Dgraph {path} returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as e:
            raise LoadError(f"Dgraph {path} returned a non-JSON body") from e
        if isinstance(body, dict) and body.get("errors"):
            messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in body["errors"]]
            raise LoadError(f"Dgraph {path} reported: {'; '.join(messages)}")
        return body

    async def detect_state(self) -> LoadState:
        query = f"{{ q(func: has({self.identity_predicate}), first: 1) {{ uid }} }}"
        body = await self._post("/query", query, "application/dql")
        found = (body.get("data") or {}).get("q") or []
        state = LoadState.POPULATED if found else LoadState.EMPTY
        logger.info("Dgraph at %s is %s", self.url, state.value)
        return state

    async def provision_schema(self, schema: AugmentedSchema, graphql: bool = False) -> None:
        await self._post("/alter", schema.to_dgraph_schema(), "application/dql")
        logger.info("Applied DQL schema to %s", self.url)
        if graphql:
            await self._post("/admin/schema", schema.to_graphql_sdl(), "application/graphql")
            logger.info("Applied GraphQL schema to %s/admin/schema", self.url)

    async def bulk_import(self, artifact_paths: Sequence[Path], schema: Optional[AugmentedSchema] = None) -> None:
        if schema is None:
            raise BulkLoadError("The bulk loader needs the augmented schema")
        self.bulk_output_dir.mkdir(parents=True, exist_ok=True)
        schema_path = self.bulk_output_dir / BULK_SCHEMA_FILE
        schema_path.write_text(schema.to_dgraph_schema())
        args = [
            self.command,
            "bulk",
            "-f",
            ",".join(str(p) for p in artifact_paths),
            "-s",
            str(schema_path),
            "--map_shards=1",
            "--reduce_shards=1",
            "--zero",
            self.zero,
            "--out",
            str(self.bulk_output_dir),
        ]
        logger.info("Running %s", " ".join(args))
        try:
            result = await asyncio.to_thread(self._runner, args, capture_output=True, text=True, check=False)
        except OSError as e:
            raise BulkLoadError(f"Cannot run {self.command}: {e}") from e
        if result.returncode != 0:
            tail = (result.stderr or result.stdout or "").strip()[-500:]
            raise BulkLoadError(f"dgraph bulk exited with status {result.returncode}: {tail}")
        logger.info("Bulk load finished; posting directories are under %s", self.bulk_output_dir)

    async def upsert_batch(self, statements: Sequence[GraphStatement]) -> None:
        if not statements:
            return
        block = build_upsert(statements, self.identity_predicate)
        await self._post("/mutate", block, "application/rdf", params={"commitNow": "true"})

    async def count(self, type_name: Optional[str] = None) -> int:
        func = f"type({type_name})" if type_name else f"has({self.identity_predicate})"
        body = await self._post("/query", f"{{ q(func: {func}) {{ count(uid) }} }}", "application/dql")
        rows = (body.get("data") or {}).get("q") or [{}]
        return int(rows[0].get("count", 0))

    async def ping(self) -> bool:
        """GraphQL health check with ``{__typename}`` on ``/graphql``."""
        try:
            response = await self._client.post("/graphql", json={"query": "{__typename}"})
        except httpx.HTTPError as e:
            logger.debug("Dgraph health check failed: %s", e)
            return False
        return response.status_code < 400

    async def close(self) -> None:
        await self._client.aclose()
