"""
Ledger sync command line.
"""

from ledger_sync.cli.main import app

__all__ = ["app"]
