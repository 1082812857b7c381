"""Grouped deletes: one ``DELETE … WHERE id IN (…)`` per flush."""

from __future__ import annotations

import logging
from time import perf_counter
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)

import psycopg
from psycopg import sql

from pgmass.constants import DELETE_CHUNK
from pgmass.models import EntityMapping
from pgmass.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)


@runtime_checkable
class DeleteCollaborator(Protocol):
    """The unit of work's view of pending deletions."""

    def scheduled_deletions(self) -> Iterable[Any]: ...

    def resolve_type(self, cls: type) -> type: ...

    def identifier(self, entity: Any) -> Dict[str, Any]: ...

    def delete_join_table_records(self, identifier: Dict[str, Any]) -> None: ...

    def delete_one(self, entity: Any) -> bool: ...


@runtime_checkable
class StatementExecutor(Protocol):
    """
    Runs one statement. ``types`` are the SQL types of ``params``;
    :func:`build_grouped_delete` already casts each placeholder to them.
    """

    def execute(
        self,
        statement: sql.Composable,
        params: Sequence[Any],
        types: Sequence[str],
    ) -> Union[int, bool]: ...


class PsycopgStatementExecutor:
    """Runs composed statements on a psycopg connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def execute(
        self,
        statement: sql.Composable,
        params: Sequence[Any],
        types: Sequence[str],
    ) -> int:
        logger.debug("Executing statement with %d %s params", len(params), set(types))
        with self.conn.cursor() as cur:
            cur.execute(statement, list(params))
            return cur.rowcount


def build_grouped_delete(table: str, id_column: str, types: Sequence[str]) -> sql.Composed:
    """``DELETE … WHERE col IN (%s::type, …)``, one cast placeholder per type."""
    return sql.SQL("DELETE FROM {tbl} WHERE {col} IN ({marks})").format(
        tbl=sql.Identifier(*table.split(".")),
        col=sql.Identifier(id_column),
        marks=sql.SQL(", ").join(sql.SQL("%s::{}").format(sql.SQL(t)) for t in types),
    )


def _chunks(values: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


class DeleteBatchCoordinator:
    """
    Turns the N ``delete()`` calls of one flush into a single statement.

    The first call snapshots every pending deletion of the managed type and
    starts a countdown; calls before the last one only acknowledge. The last
    call deletes the whole snapshot at once, after clearing join-table rows
    one identifier at a time. Composite identifiers are never grouped: each
    call deletes its own row immediately.
    """

    def __init__(
        self,
        mapping: EntityMapping,
        collaborator: DeleteCollaborator,
        executor: StatementExecutor,
        *,
        max_in_list: int = DELETE_CHUNK,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.mapping = mapping
        self.collaborator = collaborator
        self.executor = executor
        self.max_in_list = max(1, max_in_list)
        self.metrics = metrics
        self.can_delete = mapping.single_id_column is not None

        self._handled_classes: Dict[type, bool] = {}
        self._snapshot: Optional[List[Dict[str, Any]]] = None
        self._remaining = 0

    @property
    def remaining(self) -> int:
        return self._remaining

    def _handles(self, cls: type) -> bool:
        if cls not in self._handled_classes:
            self._handled_classes[cls] = (
                self.collaborator.resolve_type(cls) is self.mapping.entity_type
            )
        return self._handled_classes[cls]

    def delete(self, entity: Any) -> bool:
        if not self.can_delete:
            return self._delete_single(entity)

        if self._snapshot is None:
            self._snapshot = [
                self.collaborator.identifier(pending)
                for pending in self.collaborator.scheduled_deletions()
                if self._handles(type(pending))
            ]
            self._remaining = len(self._snapshot)
            logger.debug(
                "Collected %d pending deletions for %s",
                self._remaining,
                self.mapping.qualified_table,
            )

        self._remaining -= 1
        if self._remaining > 0:
            return True

        snapshot = self._snapshot
        self._snapshot = None
        self._remaining = 0

        if len(snapshot) <= 1:
            return self._delete_single(entity)
        return self._delete_grouped(snapshot)

    def _delete_single(self, entity: Any) -> bool:
        if self.metrics:
            self.metrics.inc("deletes_single")
        return self.collaborator.delete_one(entity)

    def _delete_grouped(self, identifiers: List[Dict[str, Any]]) -> bool:
        start = perf_counter()
        for identifier in identifiers:
            self.collaborator.delete_join_table_records(identifier)

        id_col = self.mapping.single_id_column
        values = [identifier[id_col] for identifier in identifiers]
        ok = True
        for chunk in _chunks(values, self.max_in_list):
            types = [self.mapping.id_type] * len(chunk)
            statement = build_grouped_delete(self.mapping.qualified_table, id_col, types)
            affected = self.executor.execute(statement, chunk, types)
            ok = bool(affected) and ok
            if self.metrics:
                self.metrics.inc("deletes_grouped")

        duration = perf_counter() - start
        if self.metrics:
            self.metrics.observe_stage("grouped_delete", duration)
        logger.debug(
            "Deleted %d rows from %s in %.3f s (ok=%s)",
            len(values),
            self.mapping.qualified_table,
            duration,
            ok,
        )
        return ok
