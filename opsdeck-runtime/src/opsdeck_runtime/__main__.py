"""
Runs an OpsDeck lifecycle engine as a long-lived service.

Settings come from ``OPSDECK_``-prefixed environment variables. Agents are
learned from the status feed, and completion events are reconciled until
the process is stopped.
"""
from __future__ import annotations

import asyncio

from .config import RuntimeSettings
from .engine import run_forever
from .logging_utils import configure_logging


def main() -> None:
    configure_logging()
    asyncio.run(run_forever(RuntimeSettings()))


if __name__ == "__main__":
    main()
