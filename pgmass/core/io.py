"""File I/O helpers used by the command line tool."""

from __future__ import annotations

import gzip
from pathlib import Path
from typing import Any, Dict, Iterator, List

import orjson


def chunked_rows(file_path: Path, chunk_size: int) -> Iterator[List[Dict[str, Any]]]:
    """Yield ``chunk_size`` JSON-lines rows at a time; ``.gz`` files are inflated."""
    opener = gzip.open if file_path.suffix == ".gz" else open
    with opener(file_path, "rb") as infile:
        buf: List[Dict[str, Any]] = []
        for line in infile:
            if not line.strip():
                continue
            buf.append(orjson.loads(line))
            if len(buf) >= chunk_size:
                yield buf
                buf = []
        if buf:
            yield buf
