# pgmass/core/copying.py

from __future__ import annotations

import logging
from time import perf_counter
from typing import List, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

import psycopg
from psycopg import sql

from pgmass.constants import POSTGRES_TEXT_ESCAPES
from pgmass.errors import BulkSinkFailure
from pgmass.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)


@runtime_checkable
class BulkSink(Protocol):
    """
    A channel ingesting many delimited rows in one round trip.

    ``supports_bulk_load`` is fixed when the sink is built and ``escapes``
    names the byte sequences the channel cannot carry literally.
    """

    supports_bulk_load: bool
    escapes: Mapping[bytes, Optional[bytes]]

    def copy_in(
        self,
        table: str,
        rows: Union[bytes, List[bytes]],
        column_separator: int,
        null_marker: int,
        columns: Sequence[str],
    ) -> bool: ...


def build_copy_statement(
    table: str,
    columns: Sequence[str],
    column_separator: int,
    null_marker: int,
) -> sql.Composed:
    """``COPY table (cols) FROM STDIN`` in text format with custom delimiters."""
    return sql.SQL(
        "COPY {tbl} ({cols}) FROM STDIN WITH (FORMAT text, DELIMITER {sep}, NULL {null})"
    ).format(
        tbl=sql.Identifier(*table.split(".")),
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        sep=sql.Literal(chr(column_separator)),
        null=sql.Literal(chr(null_marker)),
    )


class PsycopgCopySink:
    """
    Bulk-load sink over ``COPY … FROM STDIN`` on a psycopg connection.

    Rows are written in PostgreSQL's text format: one line per row, so
    line breaks and backslashes inside values must be escaped
    (:data:`POSTGRES_TEXT_ESCAPES`).
    """

    escapes: Mapping[bytes, Optional[bytes]] = POSTGRES_TEXT_ESCAPES

    def __init__(
        self,
        conn: psycopg.Connection,
        *,
        enabled: bool = True,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.conn = conn
        self.metrics = metrics
        # Checked once: COPY FROM STDIN is a PostgreSQL server feature.
        self.supports_bulk_load = enabled and conn.info.vendor == "PostgreSQL"

    def copy_in(
        self,
        table: str,
        rows: Union[bytes, List[bytes]],
        column_separator: int,
        null_marker: int,
        columns: Sequence[str],
    ) -> bool:
        """
        COPY pre-encoded ``rows`` into ``table``.

        A list, as :func:`~pgmass.core.encoding.encode_rows` returns in array
        mode, is written one row per line. A ``bytes`` block is for text-format
        data built by the caller: it is written as is, must end every row with
        ``\\n`` and raises :class:`ValueError` otherwise. The encoder's joined
        mode uses a control byte as row separator and cannot be passed here.

        The COPY runs in its own transaction block (a savepoint inside an open
        transaction), so a rejected COPY leaves the connection usable for a
        fallback.
        """
        if not rows:
            return True

        copy_q = build_copy_statement(table, columns, column_separator, null_marker)
        if isinstance(rows, list):
            n_rows = len(rows)
            payload = b"".join(r + b"\n" for r in rows)
        else:
            if not rows.endswith(b"\n"):
                raise ValueError("a COPY text block must end each row with a newline")
            n_rows = rows.count(b"\n")
            payload = rows

        start = perf_counter()
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur, cur.copy(copy_q) as copier:
                    copier.write(payload)
        except psycopg.Error as exc:
            logger.warning(
                "COPY into %s rejected %d rows: %s", table, n_rows, exc
            )
            raise BulkSinkFailure(f"COPY into {table} failed: {exc}") from exc
        duration = perf_counter() - start

        rps = n_rows / duration if duration > 0 else 0.0
        if self.metrics:
            self.metrics.observe_stage("copy", duration)
            self.metrics.observe_copy_rps(rps)
        logger.info(
            "COPY into %s processed %d rows in %.3f s (%.2f rows/s)",
            table,
            n_rows,
            duration,
            rps,
        )
        return True

    def __repr__(self) -> str:
        return f"<PsycopgCopySink enabled={self.supports_bulk_load}>"
