from __future__ import annotations

from typing import Dict, Optional

# ──────────────────────────────────────────────────────────────────────────────
# Delimiter search space
# ──────────────────────────────────────────────────────────────────────────────
DELIMITER_BASE: int = 0x02      # candidates start just above this code point
PRINTABLE_START: int = 0x20     # delimiters stay strictly below printable ASCII
MAX_ENCODE_ATTEMPTS: int = 2    # optimistic pass + one re-chosen set

# ──────────────────────────────────────────────────────────────────────────────
# Escape maps
# ──────────────────────────────────────────────────────────────────────────────
# What PostgreSQL's text COPY format decodes back to the literal bytes.
POSTGRES_TEXT_ESCAPES: Dict[bytes, Optional[bytes]] = {
    b"\\": b"\\\\",
    b"\n": b"\\n",
    b"\r": b"\\r",
}
# Fail-fast mode: line breaks are refused rather than escaped.
FORBID_LINE_BREAKS: Dict[bytes, Optional[bytes]] = {
    b"\n": None,
    b"\r": None,
}

TEMPORAL_FORMAT = "%Y-%m-%d %H:%M:%S"

# ──────────────────────────────────────────────────────────────────────────────
# Batching defaults
# ──────────────────────────────────────────────────────────────────────────────
MASS_THRESHOLD: int = 3
DELETE_CHUNK: int = 1000
BATCH_SIZE: int = 10_000
