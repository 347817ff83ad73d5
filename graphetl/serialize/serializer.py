"""Turn extracted records into graph statements and stage-ordered artifacts.

Identity of each serialized entity:

- **keyed Node**: ``synthesize(type, natural key values)``.
- **Edge**: derived from the type name, the canonical IDs of its required
  references and the values of its required scalars (``ID`` fields
  excluded), in field order. A list field is one component holding all of
  its items. The same relationship extracted from two sources gets the same
  identity.
- **Node without identity**, embedded under a parent: derived from the
  parent's ID, the embedding field and the element position.
- **Node without identity** extracted on its own: derived from the record's
  canonical JSON.

A reference is always resolved from the nested object present in the
record, by running the same identity functions on it. Nothing is looked up
from previously serialized data.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from graphbundle import ArtifactManifest, RunManifest

from graphetl.errors import IdentityError, MissingNaturalKeyError
from graphetl.extraction.engine import PageBatch
from graphetl.identity import canonical_id_for, derived_id, render_value
from graphetl.schema.classify import Classification, TypeRole
from graphetl.schema.models import SchemaField, SchemaModel, SchemaType, predicate_name
from graphetl.serialize.statements import DGRAPH_TYPE_PREDICATE, GraphStatement, literal_for
from graphetl.serialize.writer import ArtifactWriter

logger = logging.getLogger(__name__)

NODES_ARTIFACT = "nodes.rdf.gz"
EDGES_ARTIFACT = "edges.rdf.gz"
SINGLE_ARTIFACT = "graph.rdf.gz"
RUN_MANIFEST = "run_manifest.json"

# per-instance surrogate identifiers; never part of an identity
SURROGATE_ID_TYPE = "ID"


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class RecordSerializer:
    """Pure record -> statements conversion for one schema and classification."""

    def __init__(self, schema: SchemaModel, classification: Classification, identity_predicate: str = "xid"):
        self.schema = schema
        self.classification = classification
        self.identity_predicate = identity_predicate

    def subject_id(self, schema_type: SchemaType, record: Mapping[str, Any]) -> str:
        """Identity of a top-level record.

        Raises:
            IdentityError: If a natural key (own or of a required reference)
                is missing or not a scalar.
        """
        name = schema_type.name
        if self.classification.is_edge(name):
            return self.edge_id(schema_type, record)
        if self.classification.has_identity(name):
            return canonical_id_for(schema_type, record)
        return derived_id(name, [_canonical_json(record)])

    def edge_id(self, schema_type: SchemaType, record: Mapping[str, Any]) -> str:
        parts: list[str] = []
        for f in schema_type.required_fields:
            if f.type_name == SURROGATE_ID_TYPE:
                continue
            value = record.get(f.name)
            if value is None:
                raise MissingNaturalKeyError(schema_type.name, (f.name,))
            if f.is_list:
                # one component per field, so adjacent lists cannot trade items
                parts.append(_canonical_json([self._edge_component(f, item) for item in value]))
            else:
                parts.append(self._edge_component(f, value))
        return derived_id(schema_type.name, parts)

    def _edge_component(self, f: SchemaField, value: Any) -> str:
        if f.is_reference:
            return self._reference_identity(f, value)
        if isinstance(value, (dict, list)):
            return _canonical_json(value)
        return render_value(value)

    def _reference_identity(self, f: SchemaField, value: Any) -> str:
        target = self.schema[f.type_name]
        if not isinstance(value, Mapping):
            raise IdentityError(f"Reference {f.name} to {target.name} is not an object: {value!r}")
        if self.classification.is_edge(target.name):
            return self.edge_id(target, value)
        if self.classification.has_identity(target.name):
            return canonical_id_for(target, value)
        return derived_id(target.name, [_canonical_json(value)])

    def statements_for_record(
        self,
        type_name: str,
        record: Mapping[str, Any],
        stage: Optional[TypeRole] = None,
    ) -> list[GraphStatement]:
        """All statements for one top-level record, embedded nodes included.

        Raises:
            IdentityError: If the record or a referenced keyed Node lacks its
                natural key. The whole record is then skipped by the caller.
        """
        schema_type = self.schema[type_name]
        stage = stage or self.classification.role(type_name)
        out: list[GraphStatement] = []
        self._emit(schema_type, record, self.subject_id(schema_type, record), stage, out)
        return out

    def _emit(
        self,
        schema_type: SchemaType,
        record: Mapping[str, Any],
        subject: str,
        stage: TypeRole,
        out: list[GraphStatement],
    ) -> None:
        out.append(GraphStatement(subject, DGRAPH_TYPE_PREDICATE, literal=schema_type.name, stage=stage))
        out.append(GraphStatement(subject, self.identity_predicate, literal=subject, stage=stage))
        for f in schema_type.fields:
            value = record.get(f.name)
            if value is None:
                continue
            predicate = predicate_name(schema_type.name, f.name)
            items = value if f.is_list and isinstance(value, list) else [value]
            for index, item in enumerate(items):
                if item is None:
                    continue
                if f.is_reference:
                    object_id = self._resolve(f, item, subject, index, stage, out)
                    out.append(GraphStatement(subject, predicate, object_id=object_id, stage=stage))
                else:
                    lexical, datatype = literal_for(item, f.type_name)
                    out.append(GraphStatement(subject, predicate, literal=lexical, datatype=datatype, stage=stage))

    def _resolve(
        self,
        f: SchemaField,
        value: Any,
        parent_id: str,
        index: int,
        stage: TypeRole,
        out: list[GraphStatement],
    ) -> str:
        target = self.schema[f.type_name]
        if not isinstance(value, Mapping) or self.classification.is_edge(target.name):
            return self._reference_identity(f, value)
        if self.classification.has_identity(target.name):
            return canonical_id_for(target, value)
        # embedded: the nested record exists only under this parent
        embedded_id = derived_id(target.name, [parent_id, f.name, index])
        self._emit(target, value, embedded_id, stage, out)
        return embedded_id


class GraphSerializer:
    """Consumes page batches and writes stage-ordered artifacts.

    With ``split_artifacts`` (the default) Node statements go to
    ``nodes.rdf.gz`` and Edge statements to ``edges.rdf.gz``; otherwise both
    go to ``graph.rdf.gz``. Either way a Node batch arriving after the first
    Edge batch is rejected, so every artifact set is causally ordered.
    """

    def __init__(
        self,
        schema: SchemaModel,
        classification: Classification,
        output_dir: Path,
        identity_predicate: str = "xid",
        split_artifacts: bool = True,
        buffer_size: int = 10_000,
        source: Optional[str] = None,
    ):
        self.records = RecordSerializer(schema, classification, identity_predicate)
        self.output_dir = output_dir
        self.source = source
        self.split_artifacts = split_artifacts
        self.serialized: Counter[str] = Counter()
        self.skipped: Counter[str] = Counter()
        self._edge_stage_started = False
        self._run_manifest: Optional[RunManifest] = None

        output_dir.mkdir(parents=True, exist_ok=True)
        if split_artifacts:
            self._writers = {
                TypeRole.NODE: ArtifactWriter(output_dir / NODES_ARTIFACT, "node", source, buffer_size),
                TypeRole.EDGE: ArtifactWriter(output_dir / EDGES_ARTIFACT, "edge", source, buffer_size),
            }
        else:
            single = ArtifactWriter(output_dir / SINGLE_ARTIFACT, "all", source, buffer_size)
            self._writers = {TypeRole.NODE: single, TypeRole.EDGE: single}

    def consume(self, batch: PageBatch) -> None:
        if batch.role == TypeRole.EDGE:
            self._edge_stage_started = True
        elif self._edge_stage_started:
            raise ValueError(f"{batch.type_name} node records arrived after the edge stage started")

        writer = self._writers[batch.role]
        for record in batch.records:
            try:
                statements = self.records.statements_for_record(batch.type_name, record, batch.role)
            except IdentityError as e:
                self.skipped[batch.type_name] += 1
                logger.debug("Skipping %s record: %s", batch.type_name, e)
                continue
            writer.write(statements)
            writer.count_record(batch.type_name)
            self.serialized[batch.type_name] += 1

    def close(self, metadata: Optional[dict[str, Any]] = None) -> RunManifest:
        """Close every artifact and write ``run_manifest.json``."""
        if self._run_manifest is not None:
            return self._run_manifest
        manifests: list[ArtifactManifest] = []
        for writer in dict.fromkeys(self._writers.values()):
            manifests.append(writer.close())
        for type_name, count in sorted(self.skipped.items()):
            logger.warning("Skipped %d %s record(s) without a complete natural key", count, type_name)

        self._run_manifest = RunManifest(
            run_id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc).isoformat(),
            source=self.source,
            artifacts=manifests,
            metadata={
                "serialized": dict(self.serialized),
                "skipped": dict(self.skipped),
                **(metadata or {}),
            },
        )
        (self.output_dir / RUN_MANIFEST).write_text(self._run_manifest.model_dump_json(indent=2))
        return self._run_manifest

    def abort(self) -> None:
        """Delete the partial artifacts and any run manifest left by an earlier run."""
        if self._run_manifest is not None:
            return
        for writer in dict.fromkeys(self._writers.values()):
            writer.abort()
        (self.output_dir / RUN_MANIFEST).unlink(missing_ok=True)
