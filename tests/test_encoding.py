"""Tests for the adaptive-delimiter encoder."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from pgmass.constants import FORBID_LINE_BREAKS, POSTGRES_TEXT_ESCAPES, PRINTABLE_START
from pgmass.core import encoding
from pgmass.core.encoding import (
    byte_histogram,
    cell_bytes,
    check_uniform_columns,
    encode_rows,
    reserved_bytes,
)
from pgmass.errors import ColumnMismatch, NoSafeDelimiter, UnescapableSequence


def _expected_cells(rows):
    return [[cell_bytes(v) for v in row.values()] for row in rows]


class TestEmptyInput:
    """Nothing to encode means nothing to decide."""

    def test_joined_mode(self):
        block = encode_rows([])
        assert block.data == b""
        assert block.delimiters is None
        assert block.decode() == []

    def test_array_mode(self):
        block = encode_rows([], as_array=True)
        assert block.data == []
        assert block.attempts == 0


class TestOptimisticPass:
    """Data without control bytes encodes on the first attempt."""

    ROWS = [
        {"a": 1, "b": None, "c": "x"},
        {"a": 2, "b": "y", "c": None},
    ]

    def test_delimiter_counts(self):
        block = encode_rows(self.ROWS)
        d = block.delimiters

        assert len({d.null_marker, d.column_separator, d.row_separator}) == 3
        assert all(b < PRINTABLE_START for b in d)
        assert block.data.count(d.null_bytes) == 2
        assert block.data.count(d.column_bytes) == 4
        assert block.data.count(d.row_bytes) == 2
        assert block.attempts == 1
        assert block.escaped is False

    def test_exact_stream(self):
        block = encode_rows(self.ROWS)

        assert tuple(block.delimiters) == (0x03, 0x04, 0x05)
        assert block.data == b"1\x04\x03\x04x\x05" + b"2\x04y\x04\x03\x05"

    def test_round_trip(self):
        block = encode_rows(self.ROWS)
        assert block.decode() == [[b"1", None, b"x"], [b"2", b"y", None]]

    def test_array_mode_has_no_row_separator(self):
        block = encode_rows(self.ROWS, as_array=True)

        assert block.data == [b"1\x04\x03\x04x", b"2\x04y\x04\x03"]
        assert block.decode() == _expected_cells(self.ROWS)

    def test_array_mode_ignores_row_separator_collisions(self):
        rows = [{"a": "has\x05inside", "b": "plain"}]
        block = encode_rows(rows, as_array=True)

        assert block.attempts == 1
        assert block.decode() == _expected_cells(rows)

    def test_empty_string_is_not_null(self):
        rows = [{"a": "", "b": None}]
        block = encode_rows(rows)
        assert block.decode() == [[b"", None]]


class TestDelimiterEscalation:
    """Literal control bytes in the data force a second, final attempt."""

    def test_null_marker_collision(self):
        rows = [{"a": "x\x03y", "b": None}, {"a": "z", "b": "w"}]
        block = encode_rows(rows)

        assert block.attempts == 2
        assert block.delimiters.null_marker != 0x03
        assert block.delimiters.null_marker == 0x06
        assert block.decode() == _expected_cells(rows)

    def test_every_initial_delimiter_collides(self):
        rows = [{"a": "\x03\x04\x05", "b": None}, {"a": None, "b": "\x06"}]
        block = encode_rows(rows)

        assert block.attempts == 2
        assert tuple(block.delimiters) == (0x07, 0x08, 0x09)
        assert block.decode() == _expected_cells(rows)

    def test_exhaustion(self):
        rows = [{"a": bytes(range(0x03, PRINTABLE_START)), "b": "x"}]
        with pytest.raises(NoSafeDelimiter):
            encode_rows(rows)

    def test_second_failure_is_a_defect(self, monkeypatch):
        # A re-choice that keeps the colliding byte must not loop silently.
        monkeypatch.setattr(
            encoding, "_rechoose", lambda delims, *args, **kwargs: delims
        )
        with pytest.raises(AssertionError):
            encode_rows([{"a": "\x03", "b": "y"}])


class TestEscaping:
    """Escapes are applied only when needed, and never silently dropped."""

    def test_newline_round_trip(self):
        rows = [{"a": "line1\nline2", "b": "c"}]
        block = encode_rows(rows, escapes={b"\n": b"\\n"})

        assert block.escaped is True
        assert b"\n" not in block.data
        assert block.decode() == _expected_cells(rows)

    def test_forbidden_sequence_fails_fast(self):
        with pytest.raises(UnescapableSequence) as exc:
            encode_rows([{"a": "line1\nline2"}], escapes=FORBID_LINE_BREAKS)
        assert exc.value.literal == b"\n"

    def test_absent_literal_costs_nothing(self):
        block = encode_rows([{"a": "plain"}], escapes=FORBID_LINE_BREAKS)

        assert block.escaped is False
        assert block.escapes == {}

    def test_postgres_text_escapes(self):
        rows = [{"a": "a\\nb", "b": "x\ny"}]
        block = encode_rows(rows, as_array=True, escapes=POSTGRES_TEXT_ESCAPES)

        assert block.data == [b"a\\\\nb\x04x\\ny"]
        assert block.decode() == _expected_cells(rows)

    def test_multi_byte_literal(self):
        rows = [{"a": "one--two"}, {"a": "three"}]
        block = encode_rows(rows, escapes={b"--": b"~"})

        assert block.escaped is True
        assert block.decode() == _expected_cells(rows)

    def test_array_rows_do_not_join_into_a_literal(self):
        rows = [{"x": "a"}, {"x": "b"}]

        assert encode_rows(rows, as_array=True, escapes={b"ab": None}).data == [b"a", b"b"]

        block = encode_rows(rows, as_array=True, escapes={b"ab": b"AB"})
        assert block.escaped is False
        assert block.escapes == {}
        assert block.decode() == [[b"a"], [b"b"]]

    def test_array_literal_inside_one_row(self):
        rows = [{"x": "ab"}, {"x": "b"}]
        block = encode_rows(rows, as_array=True, escapes={b"ab": b"AB"})

        assert block.data == [b"AB", b"b"]
        assert block.escapes == {b"ab": b"AB"}

    def test_escape_bytes_are_never_delimiters(self):
        escapes = {b"\x03": b"\\003", b"\x04": None}

        assert reserved_bytes(escapes) == {0x03, 0x04}
        block = encode_rows([{"a": 1, "b": None}], escapes=escapes)
        assert tuple(block.delimiters) == (0x05, 0x06, 0x07)


class TestValues:
    """Cells are converted to their literal bytes before encoding."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, None),
            ("héllo", "héllo".encode("utf-8")),
            (42, b"42"),
            (1.5, b"1.5"),
            (Decimal("3.10"), b"3.10"),
            (True, b"t"),
            (False, b"f"),
            (b"\x00raw", b"\x00raw"),
            (datetime(2024, 1, 2, 3, 4, 5), b"2024-01-02 03:04:05"),
            (date(2024, 1, 2), b"2024-01-02 00:00:00"),
        ],
    )
    def test_cell_bytes(self, value, expected):
        assert cell_bytes(value) == expected

    def test_histogram(self):
        hist = byte_histogram(b"aab\x03")
        assert len(hist) == 256
        assert hist[ord("a")] == 2
        assert hist[0x03] == 1
        assert hist[ord("z")] == 0


class TestColumnCheck:
    """Uniform ordered columns are the caller's contract."""

    def test_uniform(self):
        rows = [{"a": 1, "b": 2}, {"a": 3, "b": 4}]
        assert check_uniform_columns(rows) == ["a", "b"]

    def test_different_order(self):
        with pytest.raises(ColumnMismatch):
            check_uniform_columns([{"a": 1, "b": 2}, {"b": 4, "a": 3}])

    def test_missing_column(self):
        with pytest.raises(ColumnMismatch):
            check_uniform_columns([{"a": 1, "b": 2}, {"a": 3}])
