"""
Adaptive-delimiter encoder turning rows into a COPY-ready byte block.

Three control bytes (null marker, column separator, row separator) are
picked optimistically, the block is built, and an exact byte histogram
proves that none of them occurs inside the data. A delimiter that does is
swapped for a byte the histogram shows to be absent, so one re-encode is
always enough.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import replace
from datetime import date, datetime, time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pgmass.constants import (
    DELIMITER_BASE,
    MAX_ENCODE_ATTEMPTS,
    PRINTABLE_START,
    TEMPORAL_FORMAT,
)
from pgmass.errors import ColumnMismatch, NoSafeDelimiter, UnescapableSequence
from pgmass.models import DelimiterSet, EncodedBlock

logger = logging.getLogger(__name__)

EscapeMap = Mapping[bytes, Optional[bytes]]
Cells = List[List[Optional[bytes]]]

_ROLES = ("null_marker", "column_separator", "row_separator")


def check_uniform_columns(rows: Sequence[Mapping[str, Any]]) -> List[str]:
    """Return the shared ordered column names, or raise :class:`ColumnMismatch`."""
    if not rows:
        return []
    columns = list(rows[0].keys())
    for pos, row in enumerate(rows):
        if list(row.keys()) != columns:
            raise ColumnMismatch(
                f"row {pos} has columns {list(row.keys())}, expected {columns}"
            )
    return columns


def cell_bytes(value: Any) -> Optional[bytes]:
    """Literal bytes of one cell; ``None`` stays ``None``."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, bool):
        return b"t" if value else b"f"
    if isinstance(value, datetime):
        return value.strftime(TEMPORAL_FORMAT).encode("ascii")
    if isinstance(value, date):
        return datetime.combine(value, time()).strftime(TEMPORAL_FORMAT).encode("ascii")
    return str(value).encode("utf-8")


def byte_histogram(data: bytes) -> List[int]:
    """Exact occurrence count of each of the 256 byte values."""
    counts = Counter(data)
    return [counts.get(b, 0) for b in range(256)]


def reserved_bytes(escapes: Optional[EscapeMap]) -> Set[int]:
    """Control bytes an escape map relies on; never usable as delimiters."""
    reserved: Set[int] = set()
    for literal, replacement in (escapes or {}).items():
        for seq in (literal, replacement or b""):
            reserved.update(b for b in seq if b < PRINTABLE_START)
    return reserved


def _candidates(exclude: Set[int]):
    for b in range(DELIMITER_BASE + 1, PRINTABLE_START):
        if b not in exclude:
            yield b


def initial_delimiters(reserved: Set[int]) -> DelimiterSet:
    picked = list(_candidates(reserved))[:3]
    if len(picked) < 3:
        raise NoSafeDelimiter("escape map reserves every candidate delimiter")
    return DelimiterSet(*picked)


def _assemble(
    cells: Cells,
    delims: DelimiterSet,
    as_array: bool,
) -> Tuple[Union[bytes, List[bytes]], bytes]:
    """
    Build the block and the flat stream the histogram is taken over.

    Array rows are joined by the row separator for the stream as well, so a
    literal can never match across two rows: escape bytes are never chosen
    as delimiters.
    """
    null, col, row = delims.null_bytes, delims.column_bytes, delims.row_bytes
    lines = [col.join(null if c is None else c for c in r) for r in cells]
    stream = row.join(lines) + row
    if as_array:
        return lines, stream
    return stream, stream


def _failing_roles(
    hist: List[int],
    delims: DelimiterSet,
    expected: Dict[str, Optional[int]],
) -> List[str]:
    failing = []
    for role in _ROLES:
        want = expected[role]
        if want is not None and hist[getattr(delims, role)] != want:
            failing.append(role)
    return failing


def _rechoose(
    delims: DelimiterSet,
    failing: List[str],
    hist: List[int],
    reserved: Set[int],
    tried: Set[int],
) -> DelimiterSet:
    """Swap each failing delimiter for an untried byte absent from the data."""
    for role in failing:
        taken = reserved | tried | set(delims)
        byte = next((b for b in _candidates(taken) if hist[b] == 0), None)
        if byte is None:
            raise NoSafeDelimiter(
                f"no control byte below {PRINTABLE_START:#04x} is free for {role}"
            )
        tried.add(byte)
        delims = replace(delims, **{role: byte})
    return delims


def _substitution(table: Mapping[bytes, bytes]) -> re.Pattern[bytes]:
    # Longest first, so overlapping literals resolve deterministically.
    keys = sorted(table, key=len, reverse=True)
    return re.compile(b"|".join(re.escape(k) for k in keys))


def _apply_escapes(
    data: Union[bytes, List[bytes]],
    stream: bytes,
    hist: List[int],
    escapes: Optional[EscapeMap],
) -> Tuple[Union[bytes, List[bytes]], Dict[bytes, bytes]]:
    present: Dict[bytes, bytes] = {}
    for literal, replacement in (escapes or {}).items():
        if not literal:
            continue
        found = hist[literal[0]] > 0 if len(literal) == 1 else literal in stream
        if not found:
            continue
        if replacement is None:
            raise UnescapableSequence(literal)
        present[literal] = replacement

    if not present:
        return data, {}

    pattern = _substitution(present)

    def _sub(m: re.Match[bytes]) -> bytes:
        return present[m.group(0)]

    if isinstance(data, list):
        return [pattern.sub(_sub, line) for line in data], present
    return pattern.sub(_sub, data), present


def encode_rows(
    rows: Sequence[Mapping[str, Any]],
    as_array: bool = False,
    escapes: Optional[EscapeMap] = None,
) -> EncodedBlock:
    """
    Encode ``rows`` into one delimited block.

    Rows must already share the same ordered columns (see
    :func:`check_uniform_columns`); this is not re-checked here.

    Parameters
    ----------
    rows:
        Ordered column -> value mappings.
    as_array:
        Return one byte string per row instead of a single stream. No row
        separator is emitted in that mode.
    escapes:
        Literal byte sequence -> replacement. Only literals actually found
        are substituted; a found literal mapped to ``None`` raises
        :class:`UnescapableSequence`.

    Raises
    ------
    NoSafeDelimiter, UnescapableSequence
        The rows cannot be encoded unambiguously. Nothing is emitted.
    """
    if not rows:
        return EncodedBlock(data=[] if as_array else b"", delimiters=None)

    cells: Cells = [[cell_bytes(v) for v in row.values()] for row in rows]
    expected: Dict[str, Optional[int]] = {
        "null_marker": sum(r.count(None) for r in cells),
        "column_separator": sum(max(len(r) - 1, 0) for r in cells),
        "row_separator": None if as_array else len(cells),
    }

    reserved = reserved_bytes(escapes)
    delims = initial_delimiters(reserved)
    tried: Set[int] = set(delims)

    for attempt in range(1, MAX_ENCODE_ATTEMPTS + 1):
        data, stream = _assemble(cells, delims, as_array)
        hist = byte_histogram(stream)
        failing = _failing_roles(hist, delims, expected)

        if not failing:
            data, applied = _apply_escapes(data, stream, hist, escapes)
            logger.debug(
                "Encoded %d rows in %d attempt(s) with delimiters %s (escaped=%s)",
                len(cells),
                attempt,
                [f"{b:#04x}" for b in delims],
                bool(applied),
            )
            return EncodedBlock(
                data=data,
                delimiters=delims,
                row_count=len(cells),
                escaped=bool(applied),
                attempts=attempt,
                escapes=applied,
            )

        if attempt == MAX_ENCODE_ATTEMPTS:
            break
        logger.debug(
            "Delimiters %s collide with data; re-choosing",
            ", ".join(failing),
        )
        delims = _rechoose(delims, failing, hist, reserved, tried)

    # Re-chosen bytes were absent from the data, so this is a logic error.
    raise AssertionError(
        f"delimiter set {delims} still ambiguous after {MAX_ENCODE_ATTEMPTS} attempts"
    )


def decode_block(block: EncodedBlock) -> List[List[Optional[bytes]]]:
    """Split ``block`` back into cells, mapping the null marker to ``None``."""
    if block.delimiters is None:
        return []
    delims = block.delimiters

    if isinstance(block.data, list):
        lines = block.data
    else:
        lines = block.data.split(delims.row_bytes)[:-1]

    if block.escapes:
        reverse = {v: k for k, v in block.escapes.items()}
        pattern = _substitution(reverse)

        def _unescape(cell: bytes) -> bytes:
            return pattern.sub(lambda m: reverse[m.group(0)], cell)
    else:
        def _unescape(cell: bytes) -> bytes:
            return cell

    return [
        [
            None if cell == delims.null_bytes else _unescape(cell)
            for cell in line.split(delims.column_bytes)
        ]
        for line in lines
    ]
