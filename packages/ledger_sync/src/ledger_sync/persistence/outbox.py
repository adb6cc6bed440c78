"""
Outbox repository.

Every remote write is recorded here before it is attempted, so a write
that fails (or never gets the chance to run) is retried by the relay and
counted by the pending indicator instead of being lost.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from ledger_sync.contracts.types import OutboxOperation, OutboxStatus
from ledger_sync.persistence.models import OutboxEntry, utcnow_naive


def replace_value(value: Any, old: str, new: str) -> tuple[Any, bool]:
    """Recursively replace string values equal to old. Returns (value, changed)."""
    if isinstance(value, str):
        return (new, True) if value == old else (value, False)
    if isinstance(value, list):
        changed = False
        items = []
        for item in value:
            item, hit = replace_value(item, old, new)
            items.append(item)
            changed = changed or hit
        return items, changed
    if isinstance(value, dict):
        changed = False
        result = {}
        for key, item in value.items():
            item, hit = replace_value(item, old, new)
            result[key] = item
            changed = changed or hit
        return result, changed
    return value, False


def references(entry: OutboxEntry, key: str) -> bool:
    """Whether an entry's path or body mentions key."""
    if key in entry.path.split("/"):
        return True
    _, hit = replace_value(entry.body, key, key)
    return hit


class OutboxRepository:
    """Repository for the ledger_outbox table."""

    def __init__(self, db: Session):
        self.db = db

    # --- Writes ---

    def enqueue(
        self,
        collection: str,
        operation: OutboxOperation,
        method: str,
        path: str,
        body: dict | None = None,
        record_key: str | None = None,
        cascade_id: str | None = None,
        cascade_action: str | None = None,
    ) -> OutboxEntry:
        """Record a pending remote write."""
        now = utcnow_naive()
        entry = OutboxEntry(
            collection=str(collection),
            operation=str(operation),
            method=method.upper(),
            path=path,
            body=body,
            record_key=record_key,
            cascade_id=cascade_id,
            cascade_action=cascade_action,
            status=OutboxStatus.PENDING.value,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    def mark_sent(self, entry: OutboxEntry) -> None:
        entry.status = OutboxStatus.SENT.value
        entry.attempts = entry.attempts + 1
        entry.last_error = None
        entry.sent_at = utcnow_naive()
        self.db.commit()

    def mark_attempt_failed(
        self,
        entry: OutboxEntry,
        error: str,
        retry_in: float,
        max_attempts: int,
        retryable: bool = True,
    ) -> str:
        """
        Record a failed delivery attempt.

        The entry is rescheduled retry_in seconds from now, or marked failed
        once max_attempts is reached or the error is not retryable.
        """
        entry.attempts = entry.attempts + 1
        entry.last_error = error
        if not retryable or entry.attempts >= max_attempts:
            entry.status = OutboxStatus.FAILED.value
        else:
            entry.next_attempt_at = utcnow_naive() + timedelta(seconds=retry_in)
        self.db.commit()
        return entry.status

    def retry_failed(self) -> int:
        """Re-queue failed entries for immediate delivery."""
        entries = (
            self.db.query(OutboxEntry)
            .filter(OutboxEntry.status == OutboxStatus.FAILED.value)
            .all()
        )
        now = utcnow_naive()
        for entry in entries:
            entry.status = OutboxStatus.PENDING.value
            entry.attempts = 0
            entry.next_attempt_at = now
        self.db.commit()
        return len(entries)

    def rewrite_references(self, old_key: str, new_key: str) -> int:
        """Point undelivered entries at a reconciled server identity."""
        count = 0
        for entry in self.undelivered():
            changed = False
            segments = entry.path.split("/")
            if old_key in segments:
                entry.path = "/".join(new_key if s == old_key else s for s in segments)
                changed = True
            if entry.body is not None:
                body, hit = replace_value(entry.body, old_key, new_key)
                if hit:
                    entry.body = body
                    changed = True
            if entry.record_key == old_key:
                entry.record_key = new_key
                changed = True
            if changed:
                count += 1
        if count:
            self.db.commit()
        return count

    def purge_sent(self, older_than: datetime | None = None) -> int:
        query = self.db.query(OutboxEntry).filter(OutboxEntry.status == OutboxStatus.SENT.value)
        if older_than is not None:
            query = query.filter(OutboxEntry.sent_at < older_than)
        count = query.delete(synchronize_session=False)
        self.db.commit()
        return count

    # --- Reads ---

    def get(self, entry_id: int) -> OutboxEntry | None:
        return self.db.get(OutboxEntry, entry_id)

    def due(self, now: datetime | None = None, limit: int = 100) -> list[OutboxEntry]:
        """Pending entries whose next attempt time has passed, oldest first."""
        now = now or utcnow_naive()
        return (
            self.db.query(OutboxEntry)
            .filter(
                OutboxEntry.status == OutboxStatus.PENDING.value,
                OutboxEntry.next_attempt_at <= now,
            )
            .order_by(OutboxEntry.id)
            .limit(limit)
            .all()
        )

    def undelivered(self) -> list[OutboxEntry]:
        return (
            self.db.query(OutboxEntry)
            .filter(OutboxEntry.status != OutboxStatus.SENT.value)
            .order_by(OutboxEntry.id)
            .all()
        )

    def unresolved_keys(self) -> set[str]:
        """Temporary keys whose create has not been delivered yet."""
        rows = (
            self.db.query(OutboxEntry.record_key)
            .filter(
                OutboxEntry.operation == OutboxOperation.CREATE.value,
                OutboxEntry.status != OutboxStatus.SENT.value,
                OutboxEntry.record_key.isnot(None),
            )
            .all()
        )
        return {row[0] for row in rows}

    def count(self, status: OutboxStatus) -> int:
        return (
            self.db.query(func.count(OutboxEntry.id))
            .filter(OutboxEntry.status == status.value)
            .scalar()
        ) or 0

    def pending_count(self) -> int:
        return self.count(OutboxStatus.PENDING)

    def unsynced_count(self) -> int:
        """Entries that are not delivered, pending or failed."""
        return self.count(OutboxStatus.PENDING) + self.count(OutboxStatus.FAILED)

    def cascade_id_for(self, record_key: str) -> str | None:
        """Cascade that queued the create of record_key, if it ran as one."""
        row = (
            self.db.query(OutboxEntry.cascade_id)
            .filter(
                OutboxEntry.record_key == record_key,
                OutboxEntry.operation == OutboxOperation.CREATE.value,
                OutboxEntry.cascade_id.isnot(None),
            )
            .order_by(OutboxEntry.id)
            .first()
        )
        return row[0] if row else None

    def cascade_steps(self, cascade_id: str) -> list[OutboxEntry]:
        return (
            self.db.query(OutboxEntry)
            .filter(OutboxEntry.cascade_id == cascade_id)
            .order_by(OutboxEntry.id)
            .all()
        )
