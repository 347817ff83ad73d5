"""Exception hierarchy for the migration pipeline.

The hierarchy mirrors how a failure is handled:

- **SetupError**: fatal, raised before any extraction worker starts
  (configuration, schema acquisition, mapping, augmentation).
- **SourceError**: raised by the source client for a single request.
  Transient and rate-limit errors are retried by the extraction engine;
  everything else fails the owning type immediately.
- **IdentityError**: a record cannot be given a canonical identity. The
  record is skipped and counted, never retried.
- **LoadError**: raised while applying artifacts to the target store.
"""

from __future__ import annotations

from typing import Optional


class GraphEtlError(Exception):
    """Base class for every error raised by graphetl."""


class SetupError(GraphEtlError):
    """Fatal error detected before extraction starts."""


class ConfigError(SetupError):
    """Configuration value missing or invalid."""


class MappingError(SetupError):
    """The type mapping or query library file is malformed."""


class SchemaUnavailableError(SetupError):
    """Neither introspection nor the static schema file produced a schema."""


class AugmentationError(SetupError):
    """An augmentation rule references a type or field absent from the schema."""


class SourceError(GraphEtlError):
    """A request against the source API failed."""


class TransientSourceError(SourceError):
    """Network error, timeout or 5xx response. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(TransientSourceError):
    """429 response. `retry_after` is the server-provided delay in seconds, if any."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class SourceQueryError(SourceError):
    """GraphQL errors or a non-retryable HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SourceProtocolError(SourceError):
    """The response does not follow the pagination contract."""


class IdentityError(GraphEtlError):
    """A canonical identity cannot be synthesized for a record."""


class MissingNaturalKeyError(IdentityError):
    """A record lacks one or more of its type's natural-key fields."""

    def __init__(self, type_name: str, missing: tuple[str, ...]):
        super().__init__(f"{type_name} record is missing natural-key field(s): {', '.join(missing)}")
        self.type_name = type_name
        self.missing = missing


class LoadError(GraphEtlError):
    """Loading artifacts into the target store failed."""


class BulkLoadError(LoadError):
    """The offline bulk import failed. The target must be reset to empty."""


class IncrementalLoadError(LoadError):
    """A statement batch could not be applied after exhausting retries."""

    def __init__(self, message: str, artifact: Optional[str] = None, types: tuple[str, ...] = ()):
        super().__init__(message)
        self.artifact = artifact
        self.types = types


class ArtifactIntegrityError(LoadError):
    """An artifact does not match the checksum or size recorded in its manifest."""
