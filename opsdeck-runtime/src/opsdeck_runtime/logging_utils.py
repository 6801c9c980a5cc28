"""
Logging setup shared by the OpsDeck entry points.

The console CLI and the long-running engine service call ``configure_logging``
once at startup. Library code never configures handlers; it only uses
module-level ``LOGGER = logging.getLogger(__name__)`` loggers.

Environment variables:

- ``OPSDECK_LOG_LEVEL``: root level (default ``INFO``).
- ``OPSDECK_LOG_FORMAT``: ``logging.Formatter`` format string.
"""
from __future__ import annotations

import logging
import os
import sys
from typing import Final, Optional, TextIO

DEFAULT_FORMAT: Final[str] = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DEFAULT_DATEFMT: Final[str] = "%Y-%m-%d %H:%M:%S"
NOISY_LOGGERS: Final[tuple[str, ...]] = ("httpx", "httpcore")

_CONFIGURED: bool = False


def resolve_level(name: Optional[str]) -> int:
    """Maps a level name such as ``"debug"`` to its value; unknown names give INFO."""
    if not name:
        return logging.INFO
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(
    level: Optional[str] = None,
    *,
    force: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Installs a single stream handler on the root logger.

    Args:
        level: Level name; overrides ``OPSDECK_LOG_LEVEL`` when given.
        force: Replace existing root handlers even if already configured.
        stream: Destination stream, stdout by default.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)

    resolved = resolve_level(level or os.environ.get("OPSDECK_LOG_LEVEL"))
    fmt = os.environ.get("OPSDECK_LOG_FORMAT") or DEFAULT_FORMAT

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=DEFAULT_DATEFMT))
    root.addHandler(handler)
    root.setLevel(resolved)

    # HTTP client request lines drown out lifecycle events at INFO.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, resolved))

    _CONFIGURED = True
