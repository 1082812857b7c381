"""Command line interface: encode JSON lines, load them through COPY, or delete by id."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Optional

import psycopg

from pgmass.config import ESCAPE_MODES, Config, initialize_environment
from pgmass.core.copying import PsycopgCopySink
from pgmass.core.deletes import (
    DeleteBatchCoordinator,
    PsycopgStatementExecutor,
    build_grouped_delete,
)
from pgmass.core.encoding import cell_bytes, check_uniform_columns, encode_rows
from pgmass.core.inserts import InsertBatchCoordinator, PsycopgRowInserter
from pgmass.core.io import chunked_rows
from pgmass.core.sequences import IdentifierPrefetcher, PsycopgSequenceSource
from pgmass.errors import EncodeError
from pgmass.logging_setup import configure_logging
from pgmass.models import EntityMapping
from pgmass.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)


class Record:
    """One JSON-lines row; weakly referenceable so its identifier is released with it."""

    __slots__ = ("values", "__weakref__")

    def __init__(self, values: Dict[str, Any]) -> None:
        self.values = values


class RecordAdapter:
    def row_values(self, entity: Record) -> Dict[str, Any]:
        return entity.values

    def assign_default_version(self, entity: Record, identifier: Dict[str, Any]) -> None:
        """Rows read from files carry no version column."""


class RecordDeletions:
    """Rows read from a file, seen as the pending deletions of one flush."""

    def __init__(self, mapping: EntityMapping, executor: PsycopgStatementExecutor) -> None:
        self.mapping = mapping
        self.executor = executor
        self.pending: List[Record] = []

    def scheduled_deletions(self) -> List[Record]:
        return list(self.pending)

    def resolve_type(self, cls: type) -> type:
        return cls

    def identifier(self, entity: Record) -> Dict[str, Any]:
        return {col: entity.values.get(col) for col in self.mapping.id_columns}

    def delete_join_table_records(self, identifier: Dict[str, Any]) -> None:
        """Plain tables have no join-table rows."""

    def delete_one(self, entity: Record) -> bool:
        col = self.mapping.id_columns[0]
        types = [self.mapping.id_type]
        statement = build_grouped_delete(self.mapping.qualified_table, col, types)
        return bool(self.executor.execute(statement, [entity.values.get(col)], types))


def build_parser(config: Optional[Config] = None) -> argparse.ArgumentParser:
    """Return the argument parser for the command line interface."""
    p = argparse.ArgumentParser(description="Adaptive-delimiter COPY loader")
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Defaults to $LOG_LEVEL or INFO.",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    enc = sub.add_parser("encode", help="Encode a JSON-lines file and report delimiters")
    enc.add_argument("file", type=Path, help="JSON-lines input (.gz allowed)")
    enc.add_argument("--array", action="store_true",
                     help="Encode one byte string per row (no row separator)")
    enc.add_argument("--escape", choices=sorted(ESCAPE_MODES),
                     default=config.escape_mode if config else "postgres",
                     help="Escape map applied after delimiters are verified")
    enc.add_argument("--verify", action="store_true",
                     help="Decode the block again and compare every cell")

    ld = sub.add_parser("load", help="Load a JSON-lines file into a table")
    ld.add_argument("file", type=Path, help="JSON-lines input (.gz allowed)")
    ld.add_argument("--table", required=True, help="Target table")
    ld.add_argument("--schema", default=None, help="Target schema")
    ld.add_argument("--id-column", default="id", help="Identifier column (default: id)")
    ld.add_argument("--sequence", default=None,
                    help="Sequence to prefetch identifiers from; ids in the file are used otherwise")
    ld.add_argument("--batch-size", type=int,
                    default=config.batch_size if config else 10_000,
                    help="Rows per flush")
    ld.add_argument("--dsn", default=config.dsn if config else None,
                    help="PostgreSQL DSN (env PGMASS_DSN)")

    dl = sub.add_parser("delete", help="Delete the rows whose ids a JSON-lines file lists")
    dl.add_argument("file", type=Path, help="JSON-lines input (.gz allowed)")
    dl.add_argument("--table", required=True, help="Target table")
    dl.add_argument("--schema", default=None, help="Target schema")
    dl.add_argument("--id-column", default="id", help="Identifier column (default: id)")
    dl.add_argument("--id-type", default="bigint", help="SQL type of the identifier (default: bigint)")
    dl.add_argument("--batch-size", type=int,
                    default=config.batch_size if config else 10_000,
                    help="Rows per flush")
    dl.add_argument("--dsn", default=config.dsn if config else None,
                    help="PostgreSQL DSN (env PGMASS_DSN)")
    return p


def run_encode(args: argparse.Namespace) -> int:
    rows: List[Dict[str, Any]] = [
        row for chunk in chunked_rows(args.file, 10_000) for row in chunk
    ]
    try:
        check_uniform_columns(rows)
        start = perf_counter()
        block = encode_rows(rows, as_array=args.array, escapes=ESCAPE_MODES[args.escape])
        duration = perf_counter() - start
    except EncodeError as exc:
        print(f"encode failed: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 2

    size = sum(map(len, block.data)) if block.as_array else len(block.data)
    delims = block.delimiters
    print(f"rows       : {block.row_count}")
    if delims is not None:
        print(f"null       : {delims.null_marker:#04x}")
        print(f"column sep : {delims.column_separator:#04x}")
        if not block.as_array:
            print(f"row sep    : {delims.row_separator:#04x}")
    print(f"attempts   : {block.attempts}")
    print(f"escaped    : {block.escaped}")
    print(f"bytes      : {size:,} in {duration:.3f} s")

    if args.verify:
        expected = [[cell_bytes(v) for v in row.values()] for row in rows]
        if block.decode() != expected:
            print("verify     : MISMATCH", file=sys.stderr)
            return 1
        print("verify     : ok")
    return 0


def run_load(args: argparse.Namespace, config: Config) -> int:
    mapping = EntityMapping(
        entity_type=Record,
        table=args.table,
        schema=args.schema,
        id_columns=(args.id_column,),
        id_strategy="sequence" if args.sequence else "assigned",
        sequence_name=args.sequence,
    )
    metrics = Metrics()
    adapter = RecordAdapter()
    total = 0

    with psycopg.connect(args.dsn) as conn:
        ids = None
        if args.sequence:
            ids = IdentifierPrefetcher(PsycopgSequenceSource(conn, args.sequence), metrics)
        coordinator = InsertBatchCoordinator(
            mapping,
            adapter,
            PsycopgRowInserter(conn, mapping, adapter, ids),
            PsycopgCopySink(conn, enabled=config.copy_enabled, metrics=metrics),
            ids=ids,
            threshold=config.mass_threshold,
            metrics=metrics,
        )
        for chunk in chunked_rows(args.file, args.batch_size):
            for values in chunk:
                coordinator.submit(Record(values))
            result = coordinator.flush()
            conn.commit()
            total += result.count
            logger.info(
                "Flushed %d rows via %s%s",
                result.count,
                result.path,
                f" ({result.reason})" if result.reason else "",
            )

    text, _ = metrics.summary()
    print(text)
    logger.info("Loaded %d rows into %s", total, mapping.qualified_table)
    return 0


def run_delete(args: argparse.Namespace, config: Config) -> int:
    mapping = EntityMapping(
        entity_type=Record,
        table=args.table,
        schema=args.schema,
        id_columns=(args.id_column,),
        id_type=args.id_type,
    )
    metrics = Metrics()
    total = 0
    failed = 0

    with psycopg.connect(args.dsn) as conn:
        executor = PsycopgStatementExecutor(conn)
        deletions = RecordDeletions(mapping, executor)
        coordinator = DeleteBatchCoordinator(
            mapping,
            deletions,
            executor,
            max_in_list=config.delete_chunk,
            metrics=metrics,
        )
        for chunk in chunked_rows(args.file, args.batch_size):
            deletions.pending = [Record(values) for values in chunk]
            for record in deletions.pending:
                if not coordinator.delete(record):
                    failed += 1
            conn.commit()
            total += len(chunk)

    text, _ = metrics.summary()
    print(text)
    logger.info("Processed %d deletions for %s", total, mapping.qualified_table)
    if failed:
        logger.warning("%d delete statement(s) affected no rows", failed)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line interface."""
    config = initialize_environment()
    args = build_parser(config).parse_args(argv)
    configure_logging(args.log_level)

    if args.cmd == "encode":
        return run_encode(args)
    if args.cmd == "delete":
        return run_delete(args, config)
    return run_load(args, config)
