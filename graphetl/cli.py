"""Command line entry point: ``graphetl <command>``.

Exit status: 0 on success, 1 for a failed run (failed types or a failed
load), 2 for setup errors (configuration, mapping, schema).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from graphetl.config import EtlConfig, load_config
from graphetl.errors import GraphEtlError, IdentityError, SetupError
from graphetl.identity import decode
from graphetl.load.dgraph import DgraphTargetStore
from graphetl.load.memory import InMemoryTargetStore
from graphetl.load.target import TargetStoreInterface
from graphetl.logging import configure_logging, setup_logging
from graphetl.mapping import SourceMapping
from graphetl.pipeline import MigrationPipeline, write_schema_documents
from graphetl.source.client import SourceClient
from graphetl.source.queries import QueryLibrary

logger = setup_logging()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SETUP = 2


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, help="TOML configuration file (default: graphetl.toml)")
    parser.add_argument("--source-url", help="GraphQL endpoint of the source instance")
    parser.add_argument("--schema-file", type=Path, help="Static schema used when introspection is unavailable")
    parser.add_argument("--query-library", type=Path, help="YAML list queries, one per type")
    parser.add_argument("--mapping", dest="mapping_file", type=Path, help="YAML natural keys and augmentation rules")
    parser.add_argument("--output-dir", type=Path, help="Directory for artifacts and manifests")
    parser.add_argument("--parallelism", type=int, help="Extraction worker pool size")
    parser.add_argument("--max-attempts", type=int, help="Attempts per request before a type fails")
    parser.add_argument(
        "--no-introspection",
        dest="introspection_enabled",
        action="store_const",
        const=False,
        help="Skip introspection and read the static schema file",
    )
    parser.add_argument("--dgraph-url", help="Dgraph Alpha HTTP endpoint")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, ...)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Shortcut for --log-level DEBUG")


def _add_target_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--target",
        choices=("dgraph", "memory"),
        default="dgraph",
        help="Target store; 'memory' performs a dry run",
    )
    parser.add_argument("--provision", action="store_true", help="Apply the augmented schema before loading")


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="graphetl",
        description="Migrate a GraphQL source into a deduplicated graph store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Extract into build/ (nodes.rdf.gz, edges.rdf.gz, manifests)
  graphetl extract --config graphetl.toml

  # Load the artifacts of two source instances into Dgraph
  graphetl load build/instance-a build/instance-b

  # Extract and load in one go, provisioning the schema first
  graphetl run --provision
""",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("extract", help="Extract every type and write artifacts")
    _add_config_arguments(p)

    p = sub.add_parser("load", help="Load artifacts of one or more runs")
    _add_config_arguments(p)
    _add_target_arguments(p)
    p.add_argument("run_dirs", nargs="*", type=Path, help="Run directories (default: output dir)")

    p = sub.add_parser("run", help="Extract, then load")
    _add_config_arguments(p)
    _add_target_arguments(p)

    p = sub.add_parser("augment", help="Write the augmented GraphQL SDL and DQL schema")
    _add_config_arguments(p)
    p.add_argument("--provision", action="store_true", help="Also submit the schema to Dgraph")
    p.add_argument("--graphql", action="store_true", help="With --provision, also submit the SDL to /admin/schema")

    p = sub.add_parser("check", help="Health-check the source and target endpoints")
    _add_config_arguments(p)

    p = sub.add_parser("decode-id", help="Decode a canonical ID (debugging only)")
    p.add_argument("canonical_id")

    return parser.parse_args(argv)


def _config_from_args(args: argparse.Namespace) -> EtlConfig:
    names = (
        "source_url",
        "schema_file",
        "query_library",
        "mapping_file",
        "output_dir",
        "parallelism",
        "max_attempts",
        "introspection_enabled",
        "dgraph_url",
        "log_level",
    )
    overrides: dict[str, Any] = {name: getattr(args, name, None) for name in names}
    if getattr(args, "verbose", False):
        overrides["log_level"] = "DEBUG"
    return load_config(config_file=args.config, **overrides)


def _target(args: argparse.Namespace, config: EtlConfig) -> TargetStoreInterface:
    if args.target == "memory":
        return InMemoryTargetStore(identity_predicate=config.identity_predicate)
    return DgraphTargetStore.from_config(config)


async def _load(args: argparse.Namespace, pipeline: MigrationPipeline) -> int:
    target = _target(args, pipeline.config)
    try:
        result = await pipeline.load(target, run_dirs=args.run_dirs, provision=args.provision)
    finally:
        await target.close()
    if not result.succeeded:
        print(f"Load failed at {result.failed_artifact}: {result.error}", file=sys.stderr)
        if result.failed_types:
            print(f"  types in failing batch: {', '.join(result.failed_types)}", file=sys.stderr)
        if result.requires_reset:
            print("  the target must be reset to empty before another bulk import", file=sys.stderr)
        return EXIT_FAILED
    print(f"Loaded {len(result.artifacts)} artifact(s) ({result.mode.value if result.mode else '-'})")
    return EXIT_OK


async def _run(args: argparse.Namespace, pipeline: MigrationPipeline) -> int:
    target = _target(args, pipeline.config)
    try:
        report = await pipeline.run(target, provision=args.provision)
    finally:
        await target.close()
    print(report.summary())
    return EXIT_OK if report.succeeded else EXIT_FAILED


async def _augment(args: argparse.Namespace, pipeline: MigrationPipeline) -> int:
    augmented = await asyncio.to_thread(pipeline.prepare)
    write_schema_documents(augmented, pipeline.config.output_dir)
    print(f"Wrote augmented schema to {pipeline.config.output_dir}")
    if args.provision:
        store = DgraphTargetStore.from_config(pipeline.config)
        try:
            await store.provision_schema(augmented, graphql=args.graphql)
        finally:
            await store.close()
    return EXIT_OK


async def _check(config: EtlConfig) -> int:
    healthy = True
    if config.source_url:
        with SourceClient.from_config(config) as client:
            ok = await asyncio.to_thread(client.ping)
        print(f"source {config.source_url}: {'OK' if ok else 'FAILED'}")
        healthy &= ok
    store = DgraphTargetStore.from_config(config)
    try:
        ok = await store.ping()
    finally:
        await store.close()
    print(f"target {config.dgraph_url}/graphql: {'OK' if ok else 'FAILED'}")
    healthy &= ok
    return EXIT_OK if healthy else EXIT_FAILED


def _decode(canonical_id: str) -> int:
    try:
        type_name, values = decode(canonical_id)
    except IdentityError as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    print(type_name)
    for value in values:
        print(f"  {value!r}")
    return EXIT_OK


async def run_command(args: argparse.Namespace) -> int:
    if args.command == "decode-id":
        return _decode(args.canonical_id)

    config = _config_from_args(args)
    configure_logging(config.log_level)
    if args.command == "check":
        return await _check(config)

    if args.command == "load":
        return await _load(args, MigrationPipeline(config, SourceMapping(), QueryLibrary({})))

    pipeline = MigrationPipeline.from_config(config)
    if args.command == "extract":
        report = await asyncio.to_thread(pipeline.extract)
        print(report.summary())
        return EXIT_OK if report.succeeded else EXIT_FAILED
    if args.command == "run":
        return await _run(args, pipeline)
    if args.command == "augment":
        return await _augment(args, pipeline)
    raise ValueError(f"Unknown command {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    try:
        return asyncio.run(run_command(args))
    except SetupError as e:
        logger.error("Setup failed: %s", e)
        print(f"error: {e}", file=sys.stderr)
        return EXIT_SETUP
    except GraphEtlError as e:
        logger.error("Run failed: %s", e)
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
