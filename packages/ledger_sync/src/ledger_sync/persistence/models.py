"""
Local Database Models

Tables owned by the sync engine in its local database:
- ledger_snapshots: durable key/value snapshot of each collection
- ledger_outbox: pending remote writes, one row per write
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from ledger_sync.contracts.types import OutboxStatus

LedgerBase = declarative_base()


def utcnow_naive() -> datetime:
    """UTC now without tzinfo; SQLite drops offsets on round trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SnapshotEntry(LedgerBase):
    """One persisted key (a collection, the last-sync marker, the identity map)."""

    __tablename__ = "ledger_snapshots"

    key = Column(String(200), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)


class OutboxEntry(LedgerBase):
    """
    A remote write that has been applied locally and awaits delivery.

    Entries are delivered in id order. Create entries carry the temporary
    key of the record they will reconcile (record_key). Entries that belong
    to the same business action share a cascade_id.
    """

    __tablename__ = "ledger_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cascade_id = Column(String(36), nullable=True, index=True)
    cascade_action = Column(String(50), nullable=True)
    collection = Column(String(50), nullable=False)
    operation = Column(String(20), nullable=False)  # create, action, update, delete
    method = Column(String(10), nullable=False)
    path = Column(String(500), nullable=False)
    body = Column(JSON, nullable=True)
    record_key = Column(String(200), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, nullable=False, default=utcnow_naive)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_outbox_status_next", "status", "next_attempt_at"),)

    def __repr__(self) -> str:
        return (
            f"<OutboxEntry id={self.id} {self.method} {self.path} "
            f"status={self.status} attempts={self.attempts}>"
        )
