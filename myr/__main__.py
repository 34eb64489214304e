"""MYR CLI entry point: python -m myr"""

from __future__ import annotations

import sys

from myr.cli import main


if __name__ == "__main__":
    sys.exit(main())
