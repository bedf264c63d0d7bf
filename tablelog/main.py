#!/usr/bin/env python

import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from tablelog.config import ConfigurationError, load_simulation_config
from tablelog.engine import TableEngine
from tablelog.errors import TableLogError
from tablelog.simulation import Simulation
from tablelog.storage import create_provider

logger = logging.getLogger(__name__)


def _open_engine(warehouse: str, read_only: bool) -> TableEngine:
    return TableEngine(create_provider("local", root=warehouse, read_only=read_only))


def _parse_column(spec: str) -> tuple:
    """name:type[:required]"""
    parts = spec.split(":")
    if len(parts) not in (2, 3) or (len(parts) == 3 and parts[2] != "required"):
        raise argparse.ArgumentTypeError(
            f"column must be name:type or name:type:required, got {spec!r}"
        )
    return parts[0], parts[1], len(parts) == 2


def _format_ts(timestamp_ms: float) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_simulate(args) -> int:
    config = load_simulation_config(args.config, seed_override=args.seed)
    logger.info(f"Starting simulation ({config.duration_ms} ms, seed={config.seed})")
    stats = Simulation(config).run(progress=not args.no_progress and not args.verbose)
    logger.info("Simulation complete")
    if args.output:
        stats.export_parquet(args.output)
        logger.info(f"Results exported to {args.output}")
    print(json.dumps(stats.summary(), indent=2))
    return 0


def cmd_create(args) -> int:
    engine = _open_engine(args.warehouse, read_only=False)
    snapshot = engine.create_table(args.table, args.column)
    print(f"Created {args.table} at version {snapshot.version}")
    return 0


def cmd_append(args) -> int:
    engine = _open_engine(args.warehouse, read_only=False)
    result = engine.transaction(args.table).append_files(args.files).commit()
    print(f"Committed version {result.version} ({result.total_retries} retries)")
    return 0


def cmd_remove(args) -> int:
    engine = _open_engine(args.warehouse, read_only=False)
    result = engine.transaction(args.table).remove_files(args.files).commit()
    print(f"Committed version {result.version} ({result.total_retries} retries)")
    return 0


def cmd_history(args) -> int:
    engine = _open_engine(args.warehouse, read_only=True)
    for entry in engine.history(args.table):
        kinds = ", ".join(k.value for k in entry.kinds)
        print(f"{entry.version:>6}  {_format_ts(entry.commit_timestamp_ms)}  {kinds}")
    return 0


def cmd_plan(args) -> int:
    engine = _open_engine(args.warehouse, read_only=True)
    plan = engine.scan(args.table, version=args.version, timestamp_ms=args.timestamp_ms)
    print(f"# {plan.table} @ version {plan.version} ({_format_ts(plan.timestamp_ms)})")
    for path in sorted(plan.files):
        print(path)
    return 0


def cmd_schema(args) -> int:
    engine = _open_engine(args.warehouse, read_only=True)
    schema = engine.schema_at(args.table, args.version)
    print(f"# schema {schema.schema_id}")
    for col in schema.columns:
        print(f"{col.column_id:>4}  {col.name}  {col.type}{'' if col.nullable else '  required'}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tablelog",
        description="Versioned table metadata: transaction log, snapshots and time travel",
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Suppress all logging except errors")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("simulate", help="Run a commit-contention simulation")
    p.add_argument("config", help="Path to TOML configuration file")
    p.add_argument("-o", "--output", help="Write per-writer results to parquet")
    p.add_argument("--seed", type=int, help="Override simulation seed")
    p.add_argument("--no-progress", action="store_true", help="Disable progress bar")
    p.set_defaults(func=cmd_simulate)

    def table_parser(name: str, help_: str, func):
        p = sub.add_parser(name, help=help_)
        p.add_argument("warehouse", help="Warehouse directory")
        p.add_argument("table", help="Table name")
        p.set_defaults(func=func)
        return p

    p = table_parser("create", "Create a table", cmd_create)
    p.add_argument("column", nargs="+", type=_parse_column,
                   help="Column as name:type or name:type:required")

    p = table_parser("append", "Append data files", cmd_append)
    p.add_argument("files", nargs="+")

    p = table_parser("remove", "Remove data files", cmd_remove)
    p.add_argument("files", nargs="+")

    table_parser("history", "Show the transaction log", cmd_history)

    p = table_parser("plan", "List files to scan (time travel)", cmd_plan)
    group = p.add_mutually_exclusive_group()
    group.add_argument("--version", type=int)
    group.add_argument("--timestamp-ms", type=float)

    p = table_parser("schema", "Show the schema at a version", cmd_schema)
    p.add_argument("--version", type=int)

    return parser


def cli(argv=None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging
    if args.quiet:
        logging.basicConfig(level=logging.ERROR, format='%(levelname)s: %(message)s')
    elif args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(message)s')

    try:
        return args.func(args)
    except ConfigurationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors:
            print(f"  ✗ {error}", file=sys.stderr)
        return 1
    except (TableLogError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(cli())
