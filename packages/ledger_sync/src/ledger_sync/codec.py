"""
Snapshot Migration Codec

Moves the whole local state to another process as one copy-pasteable
token.

Token layout:
    LSK1.<urlsafe base64 of zlib-compressed JSON>

The JSON document:
    {
        "format": "ledger-sync-snapshot",
        "version": 1,
        "exportedAt": "...",
        "lastSync": "..." | null,
        "collections": {"products": [...], ...},
        "crc32": <crc32 of the canonical collections JSON>
    }

Import is all-or-nothing: the token is fully decoded and every record
validated before the store is touched.
"""

import base64
import binascii
import json
import logging
import zlib
from typing import Any

from pydantic import ValidationError

from ledger_sync.contracts import Collection, get_spec
from ledger_sync.contracts.records import LedgerRecord
from ledger_sync.store import LedgerStore
from ledger_sync.timeutil import now_iso

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "LSK1."
SNAPSHOT_FORMAT = "ledger-sync-snapshot"
SNAPSHOT_VERSION = 1


class SnapshotDecodeError(Exception):
    """The token is not a snapshot this codec can restore."""


def _canonical(collections: dict[str, Any]) -> bytes:
    return json.dumps(collections, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encode_snapshot(collections: dict[str, list[dict]], last_sync: str | None = None) -> str:
    document = {
        "format": SNAPSHOT_FORMAT,
        "version": SNAPSHOT_VERSION,
        "exportedAt": now_iso(),
        "lastSync": last_sync,
        "collections": collections,
        "crc32": zlib.crc32(_canonical(collections)),
    }
    raw = json.dumps(document, separators=(",", ":")).encode("utf-8")
    return TOKEN_PREFIX + base64.urlsafe_b64encode(zlib.compress(raw, 9)).decode("ascii")


def decode_snapshot(token: Any) -> tuple[dict[Collection, list[LedgerRecord]], str | None]:
    """
    Decode and validate a token.

    Raises SnapshotDecodeError at the first problem.
    """
    if not isinstance(token, str):
        raise SnapshotDecodeError("Token must be a string")
    token = token.strip()
    if not token.startswith(TOKEN_PREFIX):
        raise SnapshotDecodeError("Unrecognized token prefix")

    try:
        compressed = base64.urlsafe_b64decode(token[len(TOKEN_PREFIX):].encode("ascii"))
        document = json.loads(zlib.decompress(compressed).decode("utf-8"))
    except (binascii.Error, zlib.error, UnicodeError, ValueError, RecursionError) as e:
        raise SnapshotDecodeError(f"Token is corrupt: {e}") from e

    if not isinstance(document, dict):
        raise SnapshotDecodeError("Snapshot document is not an object")
    if document.get("format") != SNAPSHOT_FORMAT:
        raise SnapshotDecodeError(f"Foreign snapshot format: {document.get('format')!r}")
    if document.get("version") != SNAPSHOT_VERSION:
        raise SnapshotDecodeError(f"Unsupported snapshot version: {document.get('version')!r}")

    raw_collections = document.get("collections")
    if not isinstance(raw_collections, dict):
        raise SnapshotDecodeError("Snapshot has no collections")
    if document.get("crc32") != zlib.crc32(_canonical(raw_collections)):
        raise SnapshotDecodeError("Snapshot checksum mismatch")

    last_sync = document.get("lastSync")
    if last_sync is not None and not isinstance(last_sync, str):
        raise SnapshotDecodeError("lastSync must be a string")

    collections: dict[Collection, list[LedgerRecord]] = {}
    for name, records in raw_collections.items():
        try:
            collection = Collection(name)
        except ValueError as e:
            raise SnapshotDecodeError(f"Unknown collection in snapshot: {name}") from e
        try:
            collections[collection] = get_spec(collection).parse_many(records)
        except (TypeError, ValidationError) as e:
            raise SnapshotDecodeError(f"Invalid {name} records in snapshot: {e}") from e

    return collections, last_sync


class SnapshotCodec:
    """export_key / import_key over a LedgerStore."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def export_key(self) -> str:
        token = encode_snapshot(self.store.dump(), self.store.last_sync)
        logger.info(f"Exported snapshot ({len(token)} chars)")
        return token

    def import_key(self, token: str) -> bool:
        """
        Replace every local collection with the token's content.

        Returns False and leaves the store untouched if the token cannot be
        decoded or validated.
        """
        try:
            collections, last_sync = decode_snapshot(token)
        except SnapshotDecodeError as e:
            logger.warning(f"Rejected snapshot import: {e}")
            return False

        self.store.restore(collections, last_sync)
        logger.info(
            f"Imported snapshot with {sum(len(r) for r in collections.values())} records",
            extra={"collections": sorted(c.value for c in collections)},
        )
        return True
