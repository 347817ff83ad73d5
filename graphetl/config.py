"""Run configuration for graphetl.

Configuration is built once at startup into a frozen `EtlConfig` and passed
explicitly to every component constructor. Values are resolved in order
(first wins):

  1. Explicit overrides (CLI flags)
  2. Environment variables, ``GRAPHETL_<FIELD>`` (e.g. ``GRAPHETL_SOURCE_URL``)
  3. A TOML file: the path in ``GRAPHETL_CONFIG`` if set, otherwise
     ``graphetl.toml`` in the current working directory
  4. Built-in defaults

TOML tables are only for grouping; keys are the field names, e.g.::

    [source]
    source_url = "http://localhost:4000/graphql"

    [extract]
    parallelism = 8
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError

from graphetl.errors import ConfigError

ENV_PREFIX = "GRAPHETL_"
CONFIG_ENV_VAR = "GRAPHETL_CONFIG"
DEFAULT_CONFIG_NAME = "graphetl.toml"


def _default_parallelism() -> int:
    return os.cpu_count() or 4


class EtlConfig(BaseModel):
    """Immutable configuration for one run.

    Attributes:
        source_url: GraphQL endpoint of the source instance.
        source_token: Optional bearer token sent to the source.
        source_label: Name recorded in manifests; defaults to the endpoint host.
        schema_file: Static schema (SDL or introspection JSON) used when
            introspection fails or is disabled.
        query_library: YAML file with the paginated list query for each type.
        mapping_file: YAML file declaring natural keys and augmentation rules.
        introspection_enabled: Set False where the source disables introspection.
        output_dir: Directory receiving artifacts and manifests.
        split_artifacts: One artifact per stage (True) or a single artifact.
        parallelism: Size of the extraction worker pool.
        queue_size: Capacity (in page batches) of the worker -> serializer queue.
        buffer_size: Statements buffered in memory before each artifact flush.
        page_size: Default page size for list queries.
        request_timeout: Per-request timeout in seconds.
        max_attempts: Attempts per request before the owning type fails.
        backoff_base_seconds: First backoff delay.
        backoff_max_seconds: Cap on any single backoff delay.
        backoff_multiplier: Growth factor between attempts.
        jitter_factor: Random +/- fraction applied to each delay.
        rate_limit_max_waits: 429 pauses tolerated per request.
        identity_predicate: Predicate holding the canonical ID in the target.
        dgraph_url: Dgraph Alpha HTTP endpoint.
        dgraph_zero: Dgraph Zero address handed to the bulk loader.
        dgraph_command: Dgraph executable used for bulk imports.
        bulk_output_dir: Where the bulk loader writes its posting directories.
        load_batch_size: Statements per upsert batch on incremental loads.
        archive_dir: If set, loaded artifacts are moved here.
        log_level: Root log level name.
    """

    model_config = {"frozen": True}

    source_url: Optional[str] = None
    source_token: Optional[str] = Field(default=None, repr=False)
    source_label: Optional[str] = None
    schema_file: Optional[Path] = None
    query_library: Optional[Path] = None
    mapping_file: Optional[Path] = None
    introspection_enabled: bool = True

    output_dir: Path = Path("build")
    split_artifacts: bool = True

    parallelism: int = Field(default_factory=_default_parallelism, ge=1)
    queue_size: int = Field(64, ge=1)
    buffer_size: int = Field(10_000, ge=1)
    page_size: int = Field(500, ge=1)
    request_timeout: float = Field(30.0, gt=0)

    max_attempts: int = Field(3, ge=1, le=20)
    backoff_base_seconds: float = Field(1.0, ge=0)
    backoff_max_seconds: float = Field(30.0, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    jitter_factor: float = Field(0.2, ge=0.0, le=1.0)
    rate_limit_max_waits: int = Field(10, ge=0)

    identity_predicate: str = "xid"
    dgraph_url: str = "http://localhost:8080"
    dgraph_zero: str = "localhost:5080"
    dgraph_command: str = "dgraph"
    bulk_output_dir: Path = Path("build/out")
    load_batch_size: int = Field(1000, ge=1)
    archive_dir: Optional[Path] = None

    log_level: str = "INFO"

    @property
    def label(self) -> Optional[str]:
        if self.source_label:
            return self.source_label
        if self.source_url:
            return urlparse(self.source_url).netloc or self.source_url
        return None

    def require(self, *names: str) -> None:
        """Raise ConfigError if any of the named settings is unset."""
        missing = [name for name in names if getattr(self, name) in (None, "")]
        if missing:
            env_names = ", ".join(ENV_PREFIX + name.upper() for name in missing)
            raise ConfigError(f"Missing required setting(s): {', '.join(missing)} (set {env_names})")


def _default_config_paths(env: Mapping[str, str]) -> list[Path]:
    paths: list[Path] = []
    if env.get(CONFIG_ENV_VAR):
        paths.append(Path(env[CONFIG_ENV_VAR]))
    paths.append(Path.cwd() / DEFAULT_CONFIG_NAME)
    return paths


def _flatten_tables(data: Mapping[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            flat.update(_flatten_tables(value))
        else:
            flat[key] = value
    return flat


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    return _flatten_tables(data)


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in EtlConfig.model_fields:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    return values


def load_config(
    config_file: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> EtlConfig:
    """Build the run configuration.

    Args:
        config_file: Explicit TOML file; must exist when given.
        env: Environment mapping, defaults to ``os.environ``.
        **overrides: Highest-precedence values; ``None`` values are ignored.

    Raises:
        ConfigError: On unreadable files, unknown keys or invalid values.
    """
    env = os.environ if env is None else env
    values: dict[str, Any] = {}

    if config_file is not None:
        if not config_file.is_file():
            raise ConfigError(f"Config file not found: {config_file}")
        values.update(_read_toml(config_file))
    else:
        for path in _default_config_paths(env):
            if path.is_file():
                values.update(_read_toml(path))
                break

    values.update(_from_env(env))
    values.update({k: v for k, v in overrides.items() if v is not None})

    unknown = sorted(set(values) - set(EtlConfig.model_fields))
    if unknown:
        raise ConfigError(f"Unknown configuration key(s): {', '.join(unknown)}")

    try:
        return EtlConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
