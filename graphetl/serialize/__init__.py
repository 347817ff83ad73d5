"""Graph statements, N-Quads artifacts and the record serializer."""

from graphetl.serialize.serializer import GraphSerializer, RecordSerializer
from graphetl.serialize.statements import GraphStatement, parse_nquad
from graphetl.serialize.writer import ArtifactWriter

__all__ = ["GraphSerializer", "RecordSerializer", "GraphStatement", "parse_nquad", "ArtifactWriter"]
