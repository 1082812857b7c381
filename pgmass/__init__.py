"""Public package exports for the :mod:`pgmass` library."""

from __future__ import annotations

__all__ = [
    "cli",
    "config",
    "constants",
    "core",
    "errors",
    "logging_setup",
    "models",
    "telemetry",
]
