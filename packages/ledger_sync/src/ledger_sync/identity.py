"""
Identity Reconciliation

Temporary identities for optimistic records, and the swap to the
server-assigned identity once a create is confirmed.
"""

import logging
import time
from typing import Any, Callable

from pydantic import ValidationError

from ledger_sync.contracts import Collection, get_spec
from ledger_sync.contracts.records import LedgerRecord
from ledger_sync.persistence.outbox import OutboxRepository
from ledger_sync.store import LedgerStore

logger = logging.getLogger(__name__)


class TemporaryIds:
    """
    Generator of `{prefix}_{timestamp}` identities.

    The millisecond timestamp is forced to increase strictly, so two
    records created in the same millisecond still get distinct keys.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._last = 0

    def __call__(self, prefix: str) -> str:
        stamp = int(self.clock() * 1000)
        if stamp <= self._last:
            stamp = self._last + 1
        self._last = stamp
        return f"{prefix}_{stamp}"


def keep_local_changes(local: LedgerRecord, payload: dict, sent: dict) -> dict:
    """
    Server echo of a create, keeping fields changed locally after it was sent.

    A cascade may have touched the optimistic record (a sale raising a new
    customer's balance) while its create was still queued; those changes
    travel as separate writes and must not be undone by the echo.
    """
    merged = dict(payload)
    for name, value in local.to_storage().items():
        if name == local.KEY_FIELD:
            continue
        if value != sent.get(name):
            merged[name] = value
    return merged


def reconcile_created(
    store: LedgerStore,
    outbox: OutboxRepository,
    collection: Collection,
    temporary_key: str,
    payload: Any,
    sent: dict | None = None,
) -> str | None:
    """
    Replace an optimistic record with the server's canonical record.

    The record is matched by its temporary key, not by position. When the
    server assigned a different key, the mapping is remembered and every
    local and queued reference is rewritten.

    Args:
        payload: The server's response to the create
        sent: The create body as it was sent, used to tell local edits apart

    Returns the server key, or None when the echo could not be used.
    """
    spec = get_spec(collection)
    payload = spec.unwrap(payload)

    local = store.find(collection, temporary_key)
    if local is not None and sent is not None and isinstance(payload, dict):
        payload = keep_local_changes(local, payload, sent)

    try:
        canonical = spec.parse(payload)
    except ValidationError as e:
        logger.warning(
            f"Server echo for {collection} {temporary_key} failed validation, keeping local record",
            extra={"collection": str(collection), "record_key": temporary_key, "error": str(e)},
        )
        return None

    server_key = canonical.key

    if server_key != temporary_key and store.find(collection, server_key) is not None:
        # A resync already brought the server copy in; drop the optimistic twin
        store.remove(collection, temporary_key)
        store.replace_record(collection, server_key, canonical)
    elif not store.replace_record(collection, temporary_key, canonical):
        # Dropped by a resync or an import before the create came back
        logger.warning(
            f"Temporary {collection} record {temporary_key} vanished before reconciliation",
            extra={"collection": str(collection), "record_key": temporary_key, "server_key": server_key},
        )

    if server_key != temporary_key:
        store.record_identity(temporary_key, server_key)
        rewritten = store.rewrite_references(temporary_key, server_key)
        queued = outbox.rewrite_references(temporary_key, server_key)
        logger.debug(
            f"Reconciled {collection} {temporary_key} -> {server_key}",
            extra={
                "collection": str(collection),
                "record_key": temporary_key,
                "server_key": server_key,
                "records_rewritten": rewritten,
                "outbox_rewritten": queued,
            },
        )

    return server_key
