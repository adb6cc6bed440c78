"""
Reconciliation Resolver

Full resync of every collection from the remote ledger service.

Fetches run in parallel and fail independently: a collection whose fetch
fails keeps its local state, and so does a collection the server returns
empty. A non-empty remote collection replaces the local one wholesale,
sorted newest first.

With keep_unsynced enabled, local records whose create is still waiting
in the outbox survive the replace instead of being dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ledger_sync.contracts import COLLECTIONS, Collection, get_spec
from ledger_sync.contracts.records import LedgerRecord
from ledger_sync.gateway import GatewayError, LedgerGateway
from ledger_sync.persistence.outbox import OutboxRepository
from ledger_sync.store import LedgerStore
from ledger_sync.timeutil import now_iso, parse_timestamp

logger = logging.getLogger(__name__)

# Checked in order; the first parseable one wins
RECENCY_FIELDS = ("date", "createdAt", "timestamp", "paymentDate")

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def recency(record: LedgerRecord) -> datetime:
    data = record.to_storage()
    for name in RECENCY_FIELDS:
        parsed = parse_timestamp(data.get(name))
        if parsed is not None:
            return parsed
    return _OLDEST


def newest_first(records: list[LedgerRecord]) -> list[LedgerRecord]:
    """Sort by recency descending. Records without a timestamp go last, in order."""
    return sorted(records, key=recency, reverse=True)


@dataclass
class SyncReport:
    synced_at: str
    replaced: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: dict[str, int] = field(default_factory=dict)
    kept_unsynced: dict[str, int] = field(default_factory=dict)


@dataclass
class _Fetch:
    collection: Collection
    records: list[LedgerRecord] | None
    skipped: int = 0
    error: str | None = None


class ReconciliationResolver:
    """Bulk refresh of the store from the remote ledger service."""

    def __init__(
        self,
        store: LedgerStore,
        gateway: LedgerGateway,
        outbox: OutboxRepository | None = None,
        keep_unsynced: bool = False,
    ):
        self.store = store
        self.gateway = gateway
        self.outbox = outbox
        self.keep_unsynced = keep_unsynced

    async def _fetch(self, collection: Collection) -> _Fetch:
        try:
            payload = await self.gateway.fetch_collection(collection)
        except GatewayError as e:
            logger.warning(
                f"Resync of {collection} failed, keeping local copy: {e}",
                extra={"collection": str(collection), "code": e.code},
            )
            return _Fetch(collection, None, error=str(e))

        records, skipped = get_spec(collection).parse_valid(payload)
        if skipped:
            logger.warning(
                f"Skipped {skipped} invalid {collection} records from the server",
                extra={"collection": str(collection), "skipped": skipped},
            )
        return _Fetch(collection, records, skipped=skipped)

    def _unsynced(self, collection: Collection, remote_keys: set[str]) -> list[LedgerRecord]:
        """Local records whose create has not reached the server yet."""
        if not self.keep_unsynced or self.outbox is None:
            return []
        pending = self.outbox.unresolved_keys()
        return [
            record
            for record in self.store.records(collection)
            if record.key in pending and record.key not in remote_keys
        ]

    async def sync_all(self) -> SyncReport:
        """
        Resync every collection. Never raises on transport failure.

        Returns a SyncReport describing what happened to each collection.
        """
        results = await asyncio.gather(*(self._fetch(c) for c in COLLECTIONS))
        report = SyncReport(synced_at=now_iso())

        for result in results:
            name = result.collection.value
            if result.skipped:
                report.skipped[name] = result.skipped

            if result.records is None:
                report.failed.append(name)
                report.retained.append(name)
                continue

            if not result.records:
                report.retained.append(name)
                continue

            remote_keys = {record.key for record in result.records}
            kept = self._unsynced(result.collection, remote_keys)
            if kept:
                report.kept_unsynced[name] = len(kept)

            self.store.replace_all(result.collection, newest_first([*kept, *result.records]))
            report.replaced.append(name)

        self.store.mark_synced(report.synced_at)

        logger.info(
            f"Resync finished: {len(report.replaced)} replaced, "
            f"{len(report.retained)} retained, {len(report.failed)} failed",
            extra={
                "replaced": report.replaced,
                "failed": report.failed,
                "skipped": report.skipped,
            },
        )
        return report
