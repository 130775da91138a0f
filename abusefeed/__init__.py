"""abusefeed core package."""
from __future__ import annotations

from .core import (
    DateRange,
    FilterOptions,
    IocEntry,
    IocResponse,
    Settings,
    UrlEntry,
    UrlResponse,
    configure_logging,
    main,
    register_feed,
    resolve_feed,
    select_entries,
)

__all__ = [
    "DateRange",
    "FilterOptions",
    "IocEntry",
    "IocResponse",
    "Settings",
    "UrlEntry",
    "UrlResponse",
    "configure_logging",
    "main",
    "register_feed",
    "resolve_feed",
    "select_entries",
]

__version__ = "0.1.0"
