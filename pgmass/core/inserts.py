"""
Batched inserts: one COPY per flush when safe, one INSERT per row otherwise.
"""
from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

import psycopg
from psycopg import sql

from pgmass.constants import MASS_THRESHOLD
from pgmass.core.copying import BulkSink
from pgmass.core.encoding import check_uniform_columns, encode_rows
from pgmass.core.sequences import IdentifierPrefetcher
from pgmass.errors import (
    BulkSinkFailure,
    ColumnMismatch,
    EncodeError,
    EntityAlreadyManaged,
)
from pgmass.models import EntityMapping, FlushResult, PostInsertId
from pgmass.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)


@runtime_checkable
class EntityAdapter(Protocol):
    """Turns entities into rows; knows nothing about batching."""

    def row_values(self, entity: Any) -> Mapping[str, Any]: ...

    def assign_default_version(self, entity: Any, identifier: Dict[str, Any]) -> None: ...


@runtime_checkable
class RowByRowInserter(Protocol):
    """The unoptimized path: one INSERT per entity, always correct."""

    def execute_inserts(self, entities: List[Any]) -> List[PostInsertId]: ...


def prepare_insert_row(
    mapping: EntityMapping,
    adapter: EntityAdapter,
    entity: Any,
    ids: Optional[IdentifierPrefetcher] = None,
) -> Tuple[Dict[str, Any], Optional[PostInsertId]]:
    """
    Row for ``entity``, with a prefetched identifier embedded when ``ids``
    is given. The identifier is memoized per entity, so preparing the same
    entity twice yields the same value.
    """
    row = dict(adapter.row_values(entity))
    if ids is None:
        return row, None
    id_col = mapping.single_id_column
    value = ids.next(entity)
    row[id_col] = value
    return row, PostInsertId(generated_id=value, entity=entity)


def identifier_of(mapping: EntityMapping, row: Mapping[str, Any]) -> Dict[str, Any]:
    return {col: row.get(col) for col in mapping.id_columns}


class InsertBatchCoordinator:
    """
    Accumulates inserts for one table and flushes them together.

    A flush uses COPY when the batch reaches ``threshold``, the sink
    advertises bulk loading and identifiers are either assigned by the
    caller or can be prefetched. Any encoding or COPY failure sends the
    whole batch through ``fallback`` instead; a flush never applies part
    of a batch.

    Entities are turned into rows in submission order, but which entity
    receives which prefetched identifier is not tied to that order.
    """

    def __init__(
        self,
        mapping: EntityMapping,
        adapter: EntityAdapter,
        fallback: RowByRowInserter,
        sink: BulkSink,
        *,
        ids: Optional[IdentifierPrefetcher] = None,
        threshold: int = MASS_THRESHOLD,
        enabled: bool = True,
        metrics: Optional[Metrics] = None,
    ) -> None:
        if mapping.id_strategy == "sequence" and mapping.single_id_column is None:
            raise ValueError(
                f"{mapping.table}: sequence identifiers need exactly one id column"
            )
        self.mapping = mapping
        self.adapter = adapter
        self.fallback = fallback
        self.sink = sink
        self.ids = ids
        self.threshold = max(1, threshold)
        self.metrics = metrics

        strategy = mapping.id_strategy
        self.handles_inserts = (
            enabled
            and sink.supports_bulk_load
            and strategy != "identity"
            and (strategy != "sequence" or ids is not None)
        )
        self.handles_batch_seq = self.handles_inserts and strategy == "sequence"
        if not self.handles_inserts:
            logger.info(
                "Bulk inserts unavailable for %s (strategy=%s, sink=%r)",
                mapping.qualified_table,
                strategy,
                sink,
            )

        self._queue: List[Any] = []

    @property
    def pending(self) -> int:
        return len(self._queue)

    def submit(self, entity: Any) -> None:
        if self.ids is not None and self.ids.has_identifier(entity):
            raise EntityAlreadyManaged(
                f"{type(entity).__name__} already received identifier "
                f"{self.ids.next(entity)!r}; it cannot be inserted again"
            )
        self._queue.append(entity)

    def flush(self) -> FlushResult:
        if not self._queue:
            return FlushResult.noop()

        entities = list(self._queue)
        if len(entities) < self.threshold:
            return self._fall_back(entities, "below_threshold")
        if not self.handles_inserts:
            return self._fall_back(entities, "bulk_unavailable")

        start = perf_counter()
        if self.handles_batch_seq:
            self.ids.prefetch(len(entities))

        rows: List[Dict[str, Any]] = []
        post_insert_ids: List[PostInsertId] = []
        seq_ids = self.ids if self.handles_batch_seq else None
        for entity in entities:
            row, post = prepare_insert_row(self.mapping, self.adapter, entity, seq_ids)
            rows.append(row)
            if post is not None:
                post_insert_ids.append(post)

        try:
            columns = check_uniform_columns(rows)
            block = encode_rows(rows, as_array=True, escapes=self.sink.escapes)
        except ColumnMismatch as exc:
            return self._fall_back(entities, "column_mismatch", exc)
        except EncodeError as exc:
            return self._fall_back(entities, "encode_error", exc)

        if self.metrics and block.attempts > 1:
            self.metrics.inc("delimiter_retries", block.attempts - 1)

        try:
            ok = self.sink.copy_in(
                self.mapping.qualified_table,
                block.data,
                block.delimiters.column_separator,
                block.delimiters.null_marker,
                columns,
            )
        except BulkSinkFailure as exc:
            return self._fall_back(entities, "sink_failure", exc)
        if not ok:
            return self._fall_back(entities, "sink_failure")

        if self.mapping.versioned:
            for entity, row in zip(entities, rows):
                self.adapter.assign_default_version(entity, identifier_of(self.mapping, row))

        self._queue.clear()
        duration = perf_counter() - start
        if self.metrics:
            self.metrics.inc("flushes_bulk")
            self.metrics.inc("inserts_bulk", len(entities))
            self.metrics.observe_stage("bulk_flush", duration)
        logger.debug(
            "Bulk-inserted %d rows into %s in %.3f s",
            len(entities),
            self.mapping.qualified_table,
            duration,
        )
        return FlushResult(
            path="bulk",
            count=len(entities),
            post_insert_ids=post_insert_ids,
        )

    def _fall_back(
        self,
        entities: List[Any],
        reason: str,
        exc: Optional[BaseException] = None,
    ) -> FlushResult:
        if exc is not None:
            logger.warning(
                "Bulk insert into %s abandoned (%s): %s; inserting %d rows one by one",
                self.mapping.qualified_table,
                reason,
                exc,
                len(entities),
            )
        else:
            logger.debug(
                "Inserting %d rows into %s one by one (%s)",
                len(entities),
                self.mapping.qualified_table,
                reason,
            )

        start = perf_counter()
        post_insert_ids = self.fallback.execute_inserts(entities)
        self._queue.clear()

        if self.metrics:
            self.metrics.inc("flushes_fallback")
            self.metrics.inc("inserts_fallback", len(entities))
            self.metrics.record_fallback(reason)
            if exc is not None:
                self.metrics.record_error(exc)
            self.metrics.observe_stage("fallback_flush", perf_counter() - start)
        return FlushResult(
            path="fallback",
            count=len(entities),
            reason=reason,
            post_insert_ids=list(post_insert_ids),
        )


class PsycopgRowInserter:
    """One ``INSERT`` per entity on a psycopg connection."""

    def __init__(
        self,
        conn: psycopg.Connection,
        mapping: EntityMapping,
        adapter: EntityAdapter,
        ids: Optional[IdentifierPrefetcher] = None,
    ) -> None:
        self.conn = conn
        self.mapping = mapping
        self.adapter = adapter
        self.ids = ids if mapping.id_strategy == "sequence" else None
        # Without a prefetcher the database fills the id and hands it back.
        self._returning = (
            mapping.id_strategy in ("sequence", "identity") and self.ids is None
        )

    def _insert_statement(self, columns: List[str]) -> sql.Composed:
        q = sql.SQL("INSERT INTO {tbl} ({cols}) VALUES ({vals})").format(
            tbl=sql.Identifier(*self.mapping.qualified_table.split(".")),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        if self._returning:
            q = q + sql.SQL(" RETURNING {id}").format(
                id=sql.Identifier(self.mapping.id_columns[0])
            )
        return q

    def execute_inserts(self, entities: List[Any]) -> List[PostInsertId]:
        post_insert_ids: List[PostInsertId] = []
        with self.conn.cursor() as cur:
            for entity in entities:
                row, post = prepare_insert_row(self.mapping, self.adapter, entity, self.ids)
                if self._returning and row.get(self.mapping.id_columns[0]) is None:
                    row.pop(self.mapping.id_columns[0], None)

                columns = list(row)
                cur.execute(self._insert_statement(columns), list(row.values()))

                if self._returning:
                    fetched = cur.fetchone()
                    post = PostInsertId(generated_id=fetched[0], entity=entity)
                    row[self.mapping.id_columns[0]] = fetched[0]
                if post is not None:
                    post_insert_ids.append(post)
                if self.mapping.versioned:
                    self.adapter.assign_default_version(
                        entity, identifier_of(self.mapping, row)
                    )
        return post_insert_ids
