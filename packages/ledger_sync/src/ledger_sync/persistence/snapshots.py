"""
Local Snapshot Store

Durable key/value persistence for collections and sync markers. Values are
JSON documents. get() never raises on bad data: missing or undecodable
values come back as None and the caller falls back to its default.

Backends:
- SqlSnapshotStore: a table in the local database (default)
- RedisSnapshotStore: plain Redis string keys
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import redis
from sqlalchemy.orm import Session

from ledger_sync.persistence.models import SnapshotEntry, utcnow_naive

logger = logging.getLogger(__name__)


class SnapshotStore(ABC):
    """Synchronous key/value contract used by the ledger store."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the decoded value, or None if absent or corrupt."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Persist a JSON-serializable value under key."""

    @staticmethod
    def _decode(key: str, raw: str | None) -> Any | None:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError, RecursionError) as e:
            logger.warning(
                f"Discarding undecodable snapshot value for {key}: {e}",
                extra={"key": key},
            )
            return None

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class SqlSnapshotStore(SnapshotStore):
    """Snapshot store backed by the ledger_snapshots table."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, key: str) -> Any | None:
        entry = self.db.get(SnapshotEntry, key)
        return self._decode(key, entry.value if entry else None)

    def set(self, key: str, value: Any) -> None:
        encoded = self._encode(value)
        entry = self.db.get(SnapshotEntry, key)
        if entry:
            entry.value = encoded
            entry.updated_at = utcnow_naive()
        else:
            self.db.add(SnapshotEntry(key=key, value=encoded))
        self.db.commit()


class RedisSnapshotStore(SnapshotStore):
    """Snapshot store backed by Redis string keys."""

    def __init__(self, client: redis.Redis):
        self.client = client

    def get(self, key: str) -> Any | None:
        raw = self.client.get(key)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return self._decode(key, raw)

    def set(self, key: str, value: Any) -> None:
        self.client.set(key, self._encode(value))
