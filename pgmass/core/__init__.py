from __future__ import annotations

from .encoding import (
    check_uniform_columns,
    decode_block,
    encode_rows,
)
from .sequences import IdentifierPrefetcher, PsycopgSequenceSource
from .copying import PsycopgCopySink, build_copy_statement
from .inserts import InsertBatchCoordinator, PsycopgRowInserter
from .deletes import DeleteBatchCoordinator, PsycopgStatementExecutor
from .io import chunked_rows

__all__ = [
    "check_uniform_columns",
    "decode_block",
    "encode_rows",
    "IdentifierPrefetcher",
    "PsycopgSequenceSource",
    "PsycopgCopySink",
    "build_copy_statement",
    "InsertBatchCoordinator",
    "PsycopgRowInserter",
    "DeleteBatchCoordinator",
    "PsycopgStatementExecutor",
    "chunked_rows",
]
