"""Bulk reservation of sequence-generated identifiers."""

from __future__ import annotations

import logging
import weakref
from collections import deque
from time import perf_counter
from typing import Any, Deque, Dict, List, Optional, Protocol, runtime_checkable

import psycopg
from psycopg import sql

from pgmass.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)


@runtime_checkable
class SequenceSource(Protocol):
    """Where identifier values actually come from."""

    def fetch_many(self, n: int) -> List[Any]: ...

    def fetch_one(self) -> Any: ...


class PsycopgSequenceSource:
    """Draws values from a PostgreSQL sequence."""

    def __init__(self, conn: psycopg.Connection, sequence_name: str) -> None:
        self.conn = conn
        self.sequence_name = sequence_name

    def fetch_many(self, n: int) -> List[Any]:
        if n <= 0:
            return []
        q = sql.SQL("SELECT nextval({seq}) FROM generate_series(1, {n})").format(
            seq=sql.Literal(self.sequence_name),
            n=sql.Literal(n),
        )
        with self.conn.cursor() as cur:
            cur.execute(q)
            return [row[0] for row in cur.fetchall()]

    def fetch_one(self) -> Any:
        q = sql.SQL("SELECT nextval({seq})").format(seq=sql.Literal(self.sequence_name))
        with self.conn.cursor() as cur:
            cur.execute(q)
            row = cur.fetchone()
        if row is None:
            raise RuntimeError(f"nextval({self.sequence_name!r}) returned no row")
        return row[0]

    def __repr__(self) -> str:
        return f"<PsycopgSequenceSource sequence='{self.sequence_name}'>"


class IdentifierPrefetcher:
    """
    Serves identifiers reserved ahead of time.

    ``prefetch(n)`` costs one round trip; ``next(entity)`` pops from the
    buffer and remembers the value for that entity object, so asking twice
    for the same entity (a bulk attempt followed by the row-by-row fallback)
    never burns a second value. An empty buffer falls back to one value per
    call.

    Entities are remembered by identity, never by ``__eq__``/``__hash__``:
    two equal entities get two identifiers. A remembered value is dropped
    when its entity is garbage collected; entities that cannot be weakly
    referenced are held until :meth:`forget`.

    Values are handed out in buffer order, not in any order tied to the
    callers: which entity gets which reserved value is unspecified.
    """

    def __init__(self, source: SequenceSource, metrics: Optional[Metrics] = None) -> None:
        self.source = source
        self.metrics = metrics
        self._buffer: Deque[Any] = deque()
        self._assigned: Dict[int, Any] = {}
        self._finalizers: Dict[int, weakref.finalize] = {}
        self._pinned: Dict[int, Any] = {}

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def remembered(self) -> int:
        return len(self._assigned)

    def prefetch(self, n: int) -> None:
        if n <= 0:
            return
        start = perf_counter()
        values = self.source.fetch_many(n)
        duration = perf_counter() - start
        self._buffer.extend(values)
        if self.metrics:
            self.metrics.observe_stage("id_prefetch", duration)
        logger.debug("Prefetched %d identifiers in %.3f s", len(values), duration)

    def next(self, entity: Any) -> Any:
        key = id(entity)
        if key in self._assigned:
            return self._assigned[key]
        if self._buffer:
            value = self._buffer.popleft()
        else:
            logger.debug("Identifier buffer empty; allocating one value")
            value = self.source.fetch_one()
        self._remember(key, entity, value)
        return value

    def _remember(self, key: int, entity: Any, value: Any) -> None:
        self._assigned[key] = value
        try:
            self._finalizers[key] = weakref.finalize(entity, self._release, key)
        except TypeError:
            # No weakref slot; the entity keeps its id alive until forget().
            self._pinned[key] = entity

    def _release(self, key: int) -> None:
        self._assigned.pop(key, None)
        self._finalizers.pop(key, None)
        self._pinned.pop(key, None)

    def has_identifier(self, entity: Any) -> bool:
        return id(entity) in self._assigned

    def forget(self, entity: Any) -> None:
        key = id(entity)
        finalizer = self._finalizers.get(key)
        if finalizer is not None:
            finalizer.detach()
        self._release(key)
