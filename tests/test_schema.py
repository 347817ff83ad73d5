"""Tests for schema acquisition, classification and the mapping file.

This module verifies:
- to_schema_model keeps only mapped types, drops unmapped object fields and
  records nullability and list-ness
- classify() puts keyed types in Stage 1, types with a required reference in
  Stage 2, and marks key-less or ambiguous types as identity-less nodes
- acquire() introspects the live source and falls back to the static schema
  file (SDL or saved introspection JSON)
- SchemaUnavailableError when neither source works, MappingError when a
  mapped type does not exist
"""

import json
from pathlib import Path

import pytest
from graphql import build_schema, get_introspection_query, graphql_sync

from graphetl.errors import MappingError, SchemaUnavailableError
from graphetl.mapping import load_mapping, parse_mapping
from graphetl.schema.acquire import acquire, read_static_schema, to_schema_model
from graphetl.schema.classify import TypeRole, classify
from graphetl.schema.models import FieldKind, SchemaField, SchemaModel, SchemaType
from graphetl.source.client import SourceClient
from tests.conftest import MAPPING, SCHEMA_SDL, SOURCE_URL, FixtureSource


def _model(mapping_data: dict = MAPPING) -> SchemaModel:
    return to_schema_model(build_schema(SCHEMA_SDL), parse_mapping(mapping_data), source="test")


class TestSchemaModel:
    """Tests for reducing a GraphQL schema to the mapped types."""

    def test_only_mapped_types(self) -> None:
        model = _model()
        assert set(model.type_names) == set(MAPPING["types"])
        assert "ArtifactConnection" not in model

    def test_field_shapes(self) -> None:
        package = _model()["Package"]
        qualifiers = package.field("qualifiers")
        assert qualifiers is not None
        assert qualifiers.kind == FieldKind.REFERENCE
        assert qualifiers.is_list
        assert qualifiers.nullable

        name = package.field("name")
        assert name is not None
        assert name.kind == FieldKind.SCALAR
        assert not name.nullable

    def test_natural_key_from_mapping(self) -> None:
        assert _model()["Package"].natural_key == ("type", "namespace", "name", "version")

    def test_references_to_unmapped_types_are_dropped(self) -> None:
        """Test that a field pointing at an unmapped object type is left out."""
        mapping = {"types": {"Package": {"natural_key": ["name"]}}}
        package = _model(mapping)["Package"]
        assert package.field("qualifiers") is None

    def test_empty_mapping_takes_every_object_type(self) -> None:
        model = _model({})
        assert "Query" not in model
        assert "Artifact" in model
        assert "ArtifactConnection" in model

    def test_mapped_type_must_exist(self) -> None:
        with pytest.raises(MappingError):
            _model({"types": {"Nope": {}}})

    def test_dangling_reference_rejected(self) -> None:
        with pytest.raises(ValueError):
            SchemaModel(
                types={
                    "A": SchemaType(
                        name="A",
                        fields=(SchemaField(name="b", kind=FieldKind.REFERENCE, type_name="B"),),
                    )
                }
            )


class TestClassify:
    """Tests for the Node/Edge strategy table."""

    def test_roles(self) -> None:
        c = classify(_model())
        assert c.node_types == ("Artifact", "Package", "PackageQualifier", "Vulnerability")
        assert c.edge_types == ("IsDependency", "CertifyVuln")

    def test_identityless_nodes(self) -> None:
        c = classify(_model())
        assert c.identityless == frozenset({"PackageQualifier"})
        assert c.has_identity("Package")
        assert not c.has_identity("PackageQualifier")
        assert not c.has_identity("IsDependency")

    def test_unknown_key_field_is_ambiguous(self) -> None:
        """Test that a key naming a missing field yields an identity-less node, not an edge."""
        mapping = {"types": {**MAPPING["types"], "Artifact": {"natural_key": ["algorithm", "checksum"]}}}
        c = classify(_model(mapping))
        assert c.role("Artifact") == TypeRole.NODE
        assert "Artifact" in c.identityless
        assert "checksum" in c.ambiguous["Artifact"]

    def test_duplicate_key_field_is_ambiguous(self) -> None:
        mapping = {"types": {**MAPPING["types"], "Artifact": {"natural_key": ["digest", "digest"]}}}
        c = classify(_model(mapping))
        assert "Artifact" in c.ambiguous

    def test_reference_key_field_is_ambiguous(self) -> None:
        mapping = {"types": {**MAPPING["types"], "CertifyVuln": {"natural_key": ["package"]}}}
        c = classify(_model(mapping))
        assert c.role("CertifyVuln") == TypeRole.NODE
        assert "reference" in c.ambiguous["CertifyVuln"]

    def test_keyed_type_with_required_reference_stays_node(self) -> None:
        """Test that a declared natural key wins over required references."""
        mapping = {"types": {**MAPPING["types"], "IsDependency": {"natural_key": ["dependencyType"]}}}
        c = classify(_model(mapping))
        assert c.role("IsDependency") == TypeRole.NODE

    def test_deterministic(self) -> None:
        assert classify(_model()) == classify(_model())


class TestMappingFile:
    """Tests for loading mapping.yaml."""

    def test_load(self, tmp_path: Path) -> None:
        path = tmp_path / "mapping.yaml"
        path.write_text(
            "types:\n"
            "  Artifact:\n"
            "    natural_key: [algorithm, digest]\n"
            "  IsDependency:\n"
            "augmentation:\n"
            "  - {type: Artifact, field: digest, intent: search, args: {by: [hash]}}\n"
        )
        mapping = load_mapping(path)
        assert mapping.natural_key("Artifact") == ("algorithm", "digest")
        assert mapping.natural_key("IsDependency") == ()
        assert mapping.augmentation[0].type_name == "Artifact"

    def test_unknown_intent(self, tmp_path: Path) -> None:
        with pytest.raises(MappingError):
            parse_mapping({"augmentation": [{"type": "A", "field": "b", "intent": "sharding"}]})

    def test_unreadable_file(self, tmp_path: Path) -> None:
        with pytest.raises(MappingError):
            load_mapping(tmp_path / "absent.yaml")

    def test_types_must_be_mapping(self) -> None:
        with pytest.raises(MappingError):
            parse_mapping({"types": ["Artifact"]})


class TestAcquire:
    """Tests for introspection with static fallback."""

    def test_introspection(self, source: FixtureSource) -> None:
        with SourceClient(SOURCE_URL, transport=source.transport()) as client:
            model = acquire(parse_mapping(MAPPING), client=client)
        assert model.source == "introspection"
        assert "Package" in model

    def test_falls_back_to_static_sdl(self, tmp_path: Path) -> None:
        """Test the fallback when the source refuses introspection."""
        source = FixtureSource(introspection=False)
        static = tmp_path / "schema.graphql"
        static.write_text(SCHEMA_SDL)
        with SourceClient(SOURCE_URL, transport=source.transport()) as client:
            model = acquire(parse_mapping(MAPPING), client=client, static_path=static)
        assert model.source == str(static)
        assert model["Artifact"].natural_key == ("algorithm", "digest")

    def test_introspection_disabled_by_config(self, source: FixtureSource, tmp_path: Path) -> None:
        static = tmp_path / "schema.graphql"
        static.write_text(SCHEMA_SDL)
        with SourceClient(SOURCE_URL, transport=source.transport()) as client:
            model = acquire(parse_mapping(MAPPING), client=client, static_path=static, introspect_enabled=False)
        assert model.source == str(static)

    def test_static_introspection_json(self, tmp_path: Path) -> None:
        """Test a saved introspection result with its data envelope."""
        result = graphql_sync(build_schema(SCHEMA_SDL), get_introspection_query(descriptions=False))
        static = tmp_path / "schema.json"
        static.write_text(json.dumps({"data": result.data}))
        schema = read_static_schema(static)
        assert schema.get_type("Package") is not None

    def test_unavailable(self, tmp_path: Path) -> None:
        source = FixtureSource(introspection=False)
        with SourceClient(SOURCE_URL, transport=source.transport()) as client:
            with pytest.raises(SchemaUnavailableError):
                acquire(parse_mapping(MAPPING), client=client, static_path=tmp_path / "absent.graphql")

    def test_nothing_configured(self) -> None:
        with pytest.raises(SchemaUnavailableError):
            acquire(parse_mapping(MAPPING))
