"""Exceptions raised by the encoder, the bulk sink and the coordinators."""

from __future__ import annotations


class PgMassError(Exception):
    """Base class for every error raised by :mod:`pgmass`."""


class EncodeError(PgMassError):
    """Rows could not be turned into an unambiguous delimited block."""


class NoSafeDelimiter(EncodeError):
    """Every control byte below printable ASCII is used by the data."""


class UnescapableSequence(EncodeError):
    """A forbidden byte sequence is present but has no replacement."""

    def __init__(self, literal: bytes) -> None:
        super().__init__(
            f"sequence {literal!r} is present in the data but has no replacement"
        )
        self.literal = literal


class ColumnMismatch(EncodeError):
    """Rows of one batch do not share the same ordered column names."""


class BulkSinkFailure(PgMassError):
    """The bulk-load channel rejected or errored on a write."""


class EntityAlreadyManaged(PgMassError, ValueError):
    """An entity that already received a batch identifier was re-submitted."""
