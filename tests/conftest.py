"""Pytest configuration and fixtures: in-memory stand-ins for the database."""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from pgmass.constants import POSTGRES_TEXT_ESCAPES
from pgmass.core.sequences import IdentifierPrefetcher
from pgmass.errors import BulkSinkFailure
from pgmass.models import EntityMapping, PostInsertId
from pgmass.telemetry.metrics import Metrics


class Widget:
    def __init__(self, name: Any, id: Any = None, note: Any = None) -> None:
        self.id = id
        self.name = name
        self.note = note
        self.version: Optional[int] = None

    def __repr__(self) -> str:
        return f"Widget({self.name!r}, id={self.id!r})"


class Gadget(Widget):
    pass


class WidgetAdapter:
    def __init__(self) -> None:
        self.versioned: List[Dict[str, Any]] = []

    def row_values(self, entity: Widget) -> Dict[str, Any]:
        return {"id": entity.id, "name": entity.name, "note": entity.note}

    def assign_default_version(self, entity: Widget, identifier: Dict[str, Any]) -> None:
        entity.version = 1
        self.versioned.append(identifier)


class FakeSink:
    def __init__(self, supports: bool = True, fail: bool = False, result: bool = True) -> None:
        self.supports_bulk_load = supports
        self.escapes = POSTGRES_TEXT_ESCAPES
        self.fail = fail
        self.result = result
        self.calls: List[Dict[str, Any]] = []

    def copy_in(self, table, rows, column_separator, null_marker, columns) -> bool:
        self.calls.append({
            "table": table,
            "rows": rows,
            "column_separator": column_separator,
            "null_marker": null_marker,
            "columns": list(columns),
        })
        if self.fail:
            raise BulkSinkFailure("COPY rejected")
        return self.result


class FakeFallback:
    """Row-by-row inserter that reuses the shared prefetcher like the real one."""

    def __init__(self, ids: Optional[IdentifierPrefetcher] = None, fail: bool = False) -> None:
        self.ids = ids
        self.fail = fail
        self.calls: List[List[Any]] = []

    def execute_inserts(self, entities: List[Any]) -> List[PostInsertId]:
        self.calls.append(list(entities))
        if self.fail:
            raise RuntimeError("insert failed")
        if self.ids is None:
            return []
        return [PostInsertId(self.ids.next(e), e) for e in entities]


class FakeSequenceSource:
    def __init__(self, start: int = 1) -> None:
        self._next = start
        self.many_calls: List[int] = []
        self.one_calls = 0

    def fetch_many(self, n: int) -> List[int]:
        self.many_calls.append(n)
        values = list(range(self._next, self._next + n))
        self._next += n
        return values

    def fetch_one(self) -> int:
        self.one_calls += 1
        value = self._next
        self._next += 1
        return value


class FakeDeleteCollaborator:
    def __init__(self, pending: List[Any]) -> None:
        self.pending = pending
        self.join_table_cleared: List[Dict[str, Any]] = []
        self.single_deletes: List[Any] = []
        self.scans = 0

    def scheduled_deletions(self) -> List[Any]:
        self.scans += 1
        return list(self.pending)

    def resolve_type(self, cls: type) -> type:
        return cls

    def identifier(self, entity: Any) -> Dict[str, Any]:
        return {"id": entity.id}

    def delete_join_table_records(self, identifier: Dict[str, Any]) -> None:
        self.join_table_cleared.append(identifier)

    def delete_one(self, entity: Any) -> bool:
        self.single_deletes.append(entity)
        return True


class FakeExecutor:
    def __init__(self, affected: Any = None) -> None:
        self.affected = affected
        self.calls: List[Dict[str, Any]] = []

    def execute(self, statement, params, types):
        self.calls.append({"statement": statement, "params": list(params), "types": list(types)})
        return len(params) if self.affected is None else self.affected


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def adapter():
    return WidgetAdapter()


@pytest.fixture
def assigned_mapping():
    return EntityMapping(entity_type=Widget, table="widgets", schema="inventory")


@pytest.fixture
def sequence_mapping():
    return EntityMapping(
        entity_type=Widget,
        table="widgets",
        id_strategy="sequence",
        sequence_name="widgets_id_seq",
        versioned=True,
    )


@pytest.fixture
def source():
    return FakeSequenceSource(start=100)


@pytest.fixture
def ids(source):
    return IdentifierPrefetcher(source)


@pytest.fixture
def mock_conn():
    """A psycopg connection double whose cursor and COPY are context managers."""
    conn = MagicMock()
    conn.info.vendor = "PostgreSQL"
    cur = MagicMock()
    copier = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    cur.copy.return_value.__enter__.return_value = copier
    conn.cur = cur
    conn.copier = copier
    return conn
