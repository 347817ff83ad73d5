"""Graph statements and their RDF N-Quad rendering.

Artifacts follow the conventions of Dgraph's bulk and live loaders:

    _:<canonical id> <dgraph.type> "Artifact" .
    _:<canonical id> <xid> "<canonical id>" .
    _:<canonical id> <Artifact.digest> "f0e0..." .
    _:<canonical id> <IsDependency.package> _:<other canonical id> .
    _:<canonical id> <Package.stars> "42"^^<xs:int> .

Subjects and reference objects are blank nodes labelled with the canonical
ID; the identity predicate carries the same ID so later incremental loads
can upsert against it.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from graphetl.schema.classify import TypeRole

DGRAPH_TYPE_PREDICATE = "dgraph.type"

XSD_INT = "xs:int"
XSD_FLOAT = "xs:float"
XSD_BOOLEAN = "xs:boolean"
XSD_DATETIME = "xs:dateTime"

_LITERAL_ESCAPES = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r", "\t": "\\t"}
_LITERAL_UNESCAPES = {"\\": "\\", '"': '"', "n": "\n", "r": "\r", "t": "\t"}

_NQUAD = re.compile(
    r'^_:(?P<subject>\S+) <(?P<predicate>[^>]+)> '
    r'(?:_:(?P<object_id>\S+)|"(?P<literal>(?:[^"\\]|\\.)*)"(?:\^\^<(?P<datatype>[^>]+)>)?) \.$'
)


def escape_literal(value: str) -> str:
    return "".join(_LITERAL_ESCAPES.get(ch, ch) for ch in value)


def unescape_literal(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_LITERAL_UNESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def literal_for(value: Any, graphql_type: str = "String") -> tuple[str, Optional[str]]:
    """Lexical form and XSD datatype of a scalar field value.

    Custom JSON scalars (objects, lists inside a scalar) are stored as their
    canonical JSON text.
    """
    if isinstance(value, bool):
        return ("true" if value else "false"), XSD_BOOLEAN
    if isinstance(value, int):
        return str(value), XSD_INT
    if isinstance(value, float):
        return repr(value), XSD_FLOAT
    if isinstance(value, str):
        return value, (XSD_DATETIME if graphql_type == "DateTime" else None)
    return json.dumps(value, sort_keys=True, separators=(",", ":")), None


@dataclass(frozen=True, slots=True)
class GraphStatement:
    """One subject-predicate-object statement.

    Exactly one of ``object_id`` (a canonical ID) and ``literal`` is set.
    """

    subject: str
    predicate: str
    object_id: Optional[str] = None
    literal: Optional[str] = None
    datatype: Optional[str] = None
    stage: TypeRole = TypeRole.NODE

    def __post_init__(self) -> None:
        if (self.object_id is None) == (self.literal is None):
            raise ValueError("A statement needs exactly one of object_id and literal")

    @property
    def is_reference(self) -> bool:
        return self.object_id is not None

    def to_nquad(self) -> str:
        if self.object_id is not None:
            obj = f"_:{self.object_id}"
        else:
            obj = f'"{escape_literal(self.literal)}"'  # type: ignore[arg-type]
            if self.datatype:
                obj += f"^^<{self.datatype}>"
        return f"_:{self.subject} <{self.predicate}> {obj} ."


def parse_nquad(line: str, stage: TypeRole = TypeRole.NODE) -> GraphStatement:
    """Parse one line written by `GraphStatement.to_nquad`.

    Raises:
        ValueError: If the line is not in that form.
    """
    match = _NQUAD.match(line.strip())
    if match is None:
        raise ValueError(f"Not an N-Quad statement: {line[:120]!r}")
    literal = match.group("literal")
    return GraphStatement(
        subject=match.group("subject"),
        predicate=match.group("predicate"),
        object_id=match.group("object_id"),
        literal=unescape_literal(literal) if literal is not None else None,
        datatype=match.group("datatype"),
        stage=stage,
    )


def typed_value(statement: GraphStatement) -> Any:
    """Python value of a literal statement, using its datatype."""
    if statement.literal is None:
        return None
    if statement.datatype == XSD_INT:
        return int(statement.literal)
    if statement.datatype == XSD_FLOAT:
        return float(statement.literal)
    if statement.datatype == XSD_BOOLEAN:
        return statement.literal == "true"
    return statement.literal
