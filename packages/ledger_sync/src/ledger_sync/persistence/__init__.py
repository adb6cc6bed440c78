"""
Engine-owned local persistence.

Snapshot stores hold the durable copy of every collection; the outbox
holds remote writes that have been applied locally but not delivered.
"""

from ledger_sync.persistence.models import LedgerBase, OutboxEntry, SnapshotEntry
from ledger_sync.persistence.outbox import OutboxRepository
from ledger_sync.persistence.snapshots import (
    RedisSnapshotStore,
    SnapshotStore,
    SqlSnapshotStore,
)

__all__ = [
    "LedgerBase",
    "OutboxEntry",
    "SnapshotEntry",
    "OutboxRepository",
    "SnapshotStore",
    "SqlSnapshotStore",
    "RedisSnapshotStore",
]
