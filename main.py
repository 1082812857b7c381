"""Entry point for invoking the pgmass command line tool."""

from __future__ import annotations

import sys

from pgmass.cli import main as cli_main

if __name__ == "__main__":
    sys.exit(cli_main())
