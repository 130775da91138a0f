"""Command line interface for abusefeed."""
from __future__ import annotations

from typing import List, Optional

from .core import main as core_main


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point used by ``python -m abusefeed`` and console scripts."""
    return core_main(argv)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
