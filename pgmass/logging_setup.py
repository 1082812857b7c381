from __future__ import annotations

import logging
import os
from typing import Iterable

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s"


def configure_logging(
    level: str | None = None,
    quiet: Iterable[str] = ("psycopg",),
) -> None:
    """
    Configure root logging once. Level can be given explicitly or taken from
    LOG_LEVEL env var (default INFO).

    Loggers named in ``quiet`` only report warnings unless DEBUG was asked for.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    root_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=root_level, format=LOG_FORMAT)
    for name in quiet:
        logging.getLogger(name).setLevel(
            root_level if root_level <= logging.DEBUG else max(root_level, logging.WARNING)
        )
