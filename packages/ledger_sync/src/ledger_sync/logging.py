"""
Logging setup shared by the CLI and the background relay.
"""

import logging
import sys

from ledger_sync.settings import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(level: str | None = None) -> None:
    """
    Configure the root logger once.

    Safe to call multiple times; an existing ledger_sync handler is reused.
    """
    level = (level or get_settings().LOG_LEVEL).upper()

    root = logging.getLogger()
    root.setLevel(level)

    if any(getattr(h, "_ledger_sync", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._ledger_sync = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
