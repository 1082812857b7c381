from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Literal, Mapping, Optional, Tuple, Union

IdStrategy = Literal["assigned", "sequence", "identity"]
FlushPath = Literal["noop", "bulk", "fallback"]


@dataclass(frozen=True, slots=True)
class DelimiterSet:
    """Three distinct control bytes framing an encoded block."""
    null_marker: int
    column_separator: int
    row_separator: int

    def __iter__(self):
        return iter((self.null_marker, self.column_separator, self.row_separator))

    @property
    def null_bytes(self) -> bytes:
        return bytes((self.null_marker,))

    @property
    def column_bytes(self) -> bytes:
        return bytes((self.column_separator,))

    @property
    def row_bytes(self) -> bytes:
        return bytes((self.row_separator,))


@dataclass(frozen=True, slots=True)
class EncodedBlock:
    """
    Output of :func:`pgmass.core.encoding.encode_rows`.

    ``data`` is one joined stream (every row terminated by the row
    separator) or, in array mode, one byte string per row.
    """
    data: Union[bytes, List[bytes]]
    delimiters: Optional[DelimiterSet]
    row_count: int = 0
    escaped: bool = False
    attempts: int = 0
    escapes: Mapping[bytes, bytes] = field(default_factory=dict)

    @property
    def as_array(self) -> bool:
        return isinstance(self.data, list)

    def decode(self) -> List[List[Optional[bytes]]]:
        from pgmass.core.encoding import decode_block

        return decode_block(self)


@dataclass(frozen=True)
class EntityMapping:
    """Persistence metadata for one managed entity type."""
    entity_type: type
    table: str
    id_columns: Tuple[str, ...] = ("id",)
    id_strategy: IdStrategy = "assigned"
    schema: Optional[str] = None
    sequence_name: Optional[str] = None
    id_type: str = "bigint"
    versioned: bool = False

    @property
    def qualified_table(self) -> str:
        return f"{self.schema}.{self.table}" if self.schema else self.table

    @property
    def single_id_column(self) -> Optional[str]:
        return self.id_columns[0] if len(self.id_columns) == 1 else None


@dataclass(slots=True)
class PostInsertId:
    generated_id: Any
    entity: Any


@dataclass(slots=True)
class FlushResult:
    path: FlushPath
    count: int = 0
    reason: Optional[str] = None
    post_insert_ids: List[PostInsertId] = field(default_factory=list)

    @classmethod
    def noop(cls) -> "FlushResult":
        return cls(path="noop")
