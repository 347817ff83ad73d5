"""Canonical identity synthesis.

A canonical ID is the merge key used by the target store. It is a pure
function of a type name and the ordered natural-key values of a record, so
the same logical entity seen through two different source instances (each
with its own surrogate IDs) always ends up with the same identity.

Encoding:
    1. Each component (type name, then every key value) is rendered to text
       and escaped: ``\\`` becomes ``\\\\`` and the separator U+001F becomes
       ``\\s``. After escaping, no component contains the separator.
    2. Components are joined with the separator.
    3. The joined UTF-8 bytes are encoded with URL-safe base64, padding
       stripped. The alphabet (A-Z a-z 0-9 - _) is valid inside N-Quad blank
       node labels and Dgraph xids.

Because of the escaping the joined form is uniquely decodable, so distinct
(type, key) tuples never collide, including keys that contain the separator,
backslashes or empty strings. The encoding is reversible (`decode`) for
debugging only; callers must treat canonical IDs as opaque.

Everything here is stateless and safe to call from any number of threads.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Mapping, Sequence

from graphetl.errors import IdentityError, MissingNaturalKeyError
from graphetl.schema.models import SchemaType

SEPARATOR = "\x1f"
_ESCAPE = "\\"
_ESCAPED_SEPARATOR = "\\s"

CanonicalID = str


def render_value(value: Any) -> str:
    """Render one key value to text.

    Strings are used verbatim; booleans become ``true``/``false``; numbers
    use ``repr``. A field always carries the same scalar type within a type,
    so renderings of different Python types never need to be told apart.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    raise IdentityError(f"Unsupported natural-key value of type {type(value).__name__}: {value!r}")


def _escape(component: str) -> str:
    return component.replace(_ESCAPE, _ESCAPE + _ESCAPE).replace(SEPARATOR, _ESCAPED_SEPARATOR)


def _unescape(component: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(component):
        ch = component[i]
        if ch == _ESCAPE:
            if i + 1 >= len(component):
                raise IdentityError("Dangling escape in canonical ID component")
            nxt = component[i + 1]
            if nxt == _ESCAPE:
                out.append(_ESCAPE)
            elif nxt == "s":
                out.append(SEPARATOR)
            else:
                raise IdentityError(f"Unknown escape sequence \\{nxt} in canonical ID component")
            i += 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def synthesize(type_name: str, key_values: Sequence[Any]) -> CanonicalID:
    """Synthesize the canonical ID for (type name, ordered key values).

    Args:
        type_name: Source type name; part of the identity so equal keys of
            different types never merge.
        key_values: Natural-key values in declaration order. Must be non-empty.

    Returns:
        An opaque, deterministic identity string.

    Raises:
        IdentityError: If no key values are given, the type name is empty, or
            a value is not a scalar.
    """
    if not type_name:
        raise IdentityError("Canonical ID requires a type name")
    if len(key_values) == 0:
        raise IdentityError(f"Canonical ID for {type_name} requires at least one key value")
    components = [type_name, *(render_value(v) for v in key_values)]
    joined = SEPARATOR.join(_escape(c) for c in components)
    return base64.urlsafe_b64encode(joined.encode("utf-8")).rstrip(b"=").decode("ascii")


def derived_id(type_name: str, parts: Sequence[Any]) -> CanonicalID:
    """Identity for records without a natural key of their own.

    Edges derive theirs from the canonical IDs they connect; embedded nodes
    from their parent's ID, the embedding field and their position. The
    leading component is ``type_name`` like any other ID, so the same
    collision guarantees hold.
    """
    return synthesize(type_name, list(parts))


def decode(canonical_id: CanonicalID) -> tuple[str, tuple[str, ...]]:
    """Reverse `synthesize` for debugging: returns (type name, rendered key values)."""
    padded = canonical_id + "=" * (-len(canonical_id) % 4)
    try:
        joined = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise IdentityError(f"Not a canonical ID: {canonical_id!r}") from e
    components = [_unescape(c) for c in joined.split(SEPARATOR)]
    if len(components) < 2:
        raise IdentityError(f"Not a canonical ID: {canonical_id!r}")
    return components[0], tuple(components[1:])


def key_values_for(schema_type: SchemaType, record: Mapping[str, Any]) -> tuple[Any, ...]:
    """Extract a record's natural-key values in declaration order.

    Raises:
        MissingNaturalKeyError: If any key field is absent or null. The
            condition is deterministic, so callers skip the record.
    """
    missing = tuple(name for name in schema_type.natural_key if record.get(name) is None)
    if missing:
        raise MissingNaturalKeyError(schema_type.name, missing)
    return tuple(record[name] for name in schema_type.natural_key)


def canonical_id_for(schema_type: SchemaType, record: Mapping[str, Any]) -> CanonicalID:
    """Canonical ID of a keyed node record."""
    return synthesize(schema_type.name, key_values_for(schema_type, record))
