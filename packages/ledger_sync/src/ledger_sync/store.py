"""
Ledger Store - The single read model for every entity collection.

Each collection is an ordered list of validated records, newest first.
Every change replaces the list with a new one derived from the previous
list (functional update) and is written through to the snapshot store
immediately, then announced to subscribers.

The store is handed to the coordinator, resolver and codec explicitly.
Only those components mutate it.
"""

import logging
from typing import Callable, Iterable

from pydantic import ValidationError

from ledger_sync.contracts import COLLECTIONS, Collection, get_spec
from ledger_sync.contracts.records import LedgerRecord
from ledger_sync.persistence.outbox import replace_value
from ledger_sync.persistence.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

Listener = Callable[[Collection, list[LedgerRecord]], None]

LAST_SYNC_KEY = "last_sync"
IDENTITY_MAP_KEY = "identity_map"


class LedgerStore:
    """In-memory collections with write-through persistence."""

    def __init__(self, snapshots: SnapshotStore, namespace: str = "ledger"):
        self.snapshots = snapshots
        self.namespace = namespace
        self._listeners: list[Listener] = []
        self._collections: dict[Collection, list[LedgerRecord]] = {
            collection: self._load_collection(collection) for collection in COLLECTIONS
        }
        self._last_sync: str | None = self._load_last_sync()
        self._identity_map: dict[str, str] = self._load_identity_map()

    # --- Persistence ---

    def storage_key(self, name: Collection | str) -> str:
        return f"{self.namespace}:{name}"

    def _load_collection(self, collection: Collection) -> list[LedgerRecord]:
        raw = self.snapshots.get(self.storage_key(collection))
        if raw is None:
            return []
        try:
            return get_spec(collection).parse_many(raw)
        except (TypeError, ValidationError) as e:
            logger.warning(
                f"Persisted {collection} snapshot is malformed, starting empty: {e}",
                extra={"collection": str(collection)},
            )
            return []

    def _load_last_sync(self) -> str | None:
        value = self.snapshots.get(self.storage_key(LAST_SYNC_KEY))
        return value if isinstance(value, str) else None

    def _load_identity_map(self) -> dict[str, str]:
        value = self.snapshots.get(self.storage_key(IDENTITY_MAP_KEY))
        if not isinstance(value, dict):
            return {}
        return {str(k): str(v) for k, v in value.items() if isinstance(v, str)}

    def _persist(self, collection: Collection) -> None:
        self.snapshots.set(
            self.storage_key(collection),
            [record.to_storage() for record in self._collections[collection]],
        )

    # --- Subscriptions ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, collection: Collection) -> None:
        records = list(self._collections[collection])
        for listener in list(self._listeners):
            try:
                listener(collection, records)
            except Exception:
                logger.exception(f"Store listener failed for {collection}")

    # --- Reads ---

    def records(self, collection: Collection) -> list[LedgerRecord]:
        return list(self._collections[Collection(collection)])

    def resolve_key(self, key: str) -> str:
        """Follow temporary -> server identity mappings."""
        seen = set()
        while key in self._identity_map and key not in seen:
            seen.add(key)
            key = self._identity_map[key]
        return key

    def find(self, collection: Collection, key: str | None) -> LedgerRecord | None:
        if not key:
            return None
        key = self.resolve_key(key)
        for record in self._collections[Collection(collection)]:
            if record.key == key:
                return record
        return None

    @property
    def last_sync(self) -> str | None:
        return self._last_sync

    @property
    def identity_map(self) -> dict[str, str]:
        return dict(self._identity_map)

    # --- Writes ---

    def apply(
        self,
        collection: Collection,
        update: Callable[[list[LedgerRecord]], Iterable[LedgerRecord]],
    ) -> list[LedgerRecord]:
        """Replace a collection with update(previous), persist and notify."""
        collection = Collection(collection)
        records = list(update(list(self._collections[collection])))
        self._collections[collection] = records
        self._persist(collection)
        self._notify(collection)
        return list(records)

    def prepend(self, collection: Collection, record: LedgerRecord) -> None:
        self.apply(collection, lambda previous: [record, *previous])

    def replace_all(self, collection: Collection, records: Iterable[LedgerRecord]) -> None:
        records = list(records)
        self.apply(collection, lambda _previous: records)

    def replace_record(self, collection: Collection, key: str, record: LedgerRecord) -> bool:
        """Swap the record with the given key in place. Returns False if it is gone."""
        found = False

        def swap(previous: list[LedgerRecord]) -> list[LedgerRecord]:
            nonlocal found
            result = []
            for existing in previous:
                if existing.key == key and not found:
                    result.append(record)
                    found = True
                else:
                    result.append(existing)
            return result

        self.apply(collection, swap)
        return found

    def patch(self, collection: Collection, key: str, changes: dict) -> LedgerRecord | None:
        """Apply field changes to one record. Returns the updated record or None."""
        key = self.resolve_key(key)
        updated: LedgerRecord | None = None

        def change(previous: list[LedgerRecord]) -> list[LedgerRecord]:
            nonlocal updated
            result = []
            for existing in previous:
                if existing.key == key and updated is None:
                    updated = existing.model_copy(update=changes)
                    result.append(updated)
                else:
                    result.append(existing)
            return result

        self.apply(collection, change)
        return updated

    def remove(self, collection: Collection, key: str) -> bool:
        key = self.resolve_key(key)
        before = len(self._collections[Collection(collection)])
        after = self.apply(collection, lambda previous: [r for r in previous if r.key != key])
        return len(after) < before

    def mark_synced(self, timestamp: str) -> None:
        self._last_sync = timestamp
        self.snapshots.set(self.storage_key(LAST_SYNC_KEY), timestamp)

    # --- Identity bookkeeping ---

    def record_identity(self, temporary_key: str, server_key: str) -> None:
        if temporary_key == server_key:
            return
        self._identity_map[temporary_key] = server_key
        self.snapshots.set(self.storage_key(IDENTITY_MAP_KEY), self._identity_map)

    def rewrite_references(self, old_key: str, new_key: str) -> int:
        """
        Replace references to old_key in every record (foreign ids, item
        product ids, mirrored expense references). Returns records changed.
        """
        changed_total = 0
        for collection in COLLECTIONS:
            spec = get_spec(collection)
            changed_here = 0

            def rewrite(previous: list[LedgerRecord]) -> list[LedgerRecord]:
                nonlocal changed_here
                result = []
                for record in previous:
                    data, hit = replace_value(record.to_storage(), old_key, new_key)
                    if hit:
                        result.append(spec.parse(data))
                        changed_here += 1
                    else:
                        result.append(record)
                return result

            if any(self._mentions(record, old_key) for record in self._collections[collection]):
                self.apply(collection, rewrite)
            changed_total += changed_here
        return changed_total

    @staticmethod
    def _mentions(record: LedgerRecord, key: str) -> bool:
        _, hit = replace_value(record.to_storage(), key, key)
        return hit

    # --- Wholesale snapshot ---

    def dump(self) -> dict[str, list[dict]]:
        """JSON-safe copy of every collection keyed by collection name."""
        return {
            collection.value: [record.to_storage() for record in records]
            for collection, records in self._collections.items()
        }

    def restore(
        self,
        collections: dict[Collection, list[LedgerRecord]],
        last_sync: str | None = None,
    ) -> None:
        """Overwrite every collection. Collections not given become empty."""
        for collection in COLLECTIONS:
            self.replace_all(collection, collections.get(collection, []))
        self._identity_map = {}
        self.snapshots.set(self.storage_key(IDENTITY_MAP_KEY), {})
        if last_sync is not None:
            self.mark_synced(last_sync)
