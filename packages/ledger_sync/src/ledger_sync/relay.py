"""
Outbox Relay - Local outbox to Remote Ledger Gateway

This component:
1. Delivers outbox entries to the remote ledger service
2. Reconciles temporary identities when a create is confirmed
3. Reschedules failed entries with bounded exponential backoff
4. Runs as a background loop that drains due entries

Entries that reference a temporary identity whose own create has not been
delivered yet are deferred, so targeted actions never hit the server with
an identity it has never seen.
"""

import asyncio
import logging

from ledger_sync.contracts import Collection
from ledger_sync.contracts.types import OutboxOperation, OutboxStatus
from ledger_sync.gateway import GatewayError, LedgerGateway
from ledger_sync.identity import reconcile_created
from ledger_sync.notices import NoticeBoard, NoticeLevel
from ledger_sync.persistence.models import OutboxEntry
from ledger_sync.persistence.outbox import OutboxRepository, references
from ledger_sync.store import LedgerStore

logger = logging.getLogger(__name__)


class OutboxRelay:
    """Delivers outbox entries and keeps retrying the ones that fail."""

    def __init__(
        self,
        store: LedgerStore,
        outbox: OutboxRepository,
        gateway: LedgerGateway,
        notices: NoticeBoard | None = None,
        max_attempts: int = 8,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
    ):
        self.store = store
        self.outbox = outbox
        self.gateway = gateway
        self.notices = notices or NoticeBoard()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._in_flight: set[int] = set()

    def backoff_delay(self, attempts: int) -> float:
        """Delay before the next try after `attempts` failures."""
        return min(self.backoff_base * (2 ** max(attempts - 1, 0)), self.backoff_max)

    def is_blocked(self, entry: OutboxEntry, unresolved: set[str] | None = None) -> bool:
        """Whether the entry references a temporary key still awaiting its create."""
        if unresolved is None:
            unresolved = self.outbox.unresolved_keys()
        for key in unresolved:
            if entry.operation == OutboxOperation.CREATE.value and entry.record_key == key:
                continue
            if references(entry, key):
                return True
        return False

    async def deliver(self, entry_id: int) -> bool:
        """
        Attempt one entry. Never raises on transport failure.

        Returns True if the entry was delivered.
        """
        entry = self.outbox.get(entry_id)
        if entry is None or entry.status != OutboxStatus.PENDING.value:
            return False
        if entry.id in self._in_flight:
            return False
        if self.is_blocked(entry):
            logger.debug(
                f"Deferring outbox entry {entry.id}: waits for a pending create",
                extra={"entry_id": entry.id, "path": entry.path},
            )
            return False

        self._in_flight.add(entry.id)
        try:
            payload = await self.gateway.send(entry.method, entry.path, entry.body)
        except GatewayError as e:
            self._record_failure(entry, e)
            return False
        finally:
            self._in_flight.discard(entry.id)

        dependents: list[int] = []
        if entry.operation == OutboxOperation.CREATE.value and entry.record_key:
            dependents = [
                other.id
                for other in self.outbox.undelivered()
                if other.id != entry.id
                and other.status == OutboxStatus.PENDING.value
                and references(other, entry.record_key)
            ]
            reconcile_created(
                self.store,
                self.outbox,
                Collection(entry.collection),
                entry.record_key,
                payload,
                sent=entry.body,
            )

        self.outbox.mark_sent(entry)

        logger.debug(
            f"Delivered outbox entry {entry.id}",
            extra={
                "entry_id": entry.id,
                "cascade_id": entry.cascade_id,
                "collection": entry.collection,
                "operation": entry.operation,
            },
        )

        # Writes that waited for this create can go out now
        for dependent_id in dependents:
            await self.deliver(dependent_id)
        return True

    def _record_failure(self, entry: OutboxEntry, error: GatewayError) -> None:
        delay = self.backoff_delay(entry.attempts + 1)
        status = self.outbox.mark_attempt_failed(
            entry,
            error=str(error),
            retry_in=delay,
            max_attempts=self.max_attempts,
            retryable=error.retryable,
        )

        logger.warning(
            f"Remote write failed for {entry.collection}: {error}",
            extra={
                "entry_id": entry.id,
                "cascade_id": entry.cascade_id,
                "collection": entry.collection,
                "attempts": entry.attempts,
                "status": status,
            },
        )

        if status == OutboxStatus.FAILED.value:
            self.notices.post(
                f"Could not sync {entry.collection} after {entry.attempts} attempts. "
                f"The change is saved on this device only.",
                NoticeLevel.ERROR,
            )
        elif entry.attempts == 1:
            self.notices.post(
                f"Saved locally. {entry.collection} will sync when the server is reachable.",
                NoticeLevel.WARNING,
            )

    async def drain(self, limit: int = 100) -> int:
        """
        Deliver every due entry, oldest first.

        Returns number of entries delivered.
        """
        delivered = 0
        for entry in self.outbox.due(limit=limit):
            if await self.deliver(entry.id):
                delivered += 1
        return delivered

    def pending_count(self) -> int:
        return self.outbox.pending_count()

    def unsynced_count(self) -> int:
        return self.outbox.unsynced_count()

    async def run(self, stop: asyncio.Event, poll_interval: float = 5.0) -> None:
        """Background loop until stop is set."""
        logger.info(
            f"Starting outbox relay (poll={poll_interval}s, max_attempts={self.max_attempts}, "
            f"backoff={self.backoff_base}s..{self.backoff_max}s)"
        )

        consecutive_empty = 0

        while not stop.is_set():
            try:
                count = await self.drain()
            except Exception as e:
                logger.error(f"Error in relay loop: {e}", exc_info=True)
                count = 0

            if count > 0:
                logger.info(f"Relayed {count} outbox entries")
                consecutive_empty = 0
                sleep_time = 0.1
            else:
                consecutive_empty += 1
                sleep_time = min(poll_interval * (1.5 ** min(consecutive_empty, 5)), 60)

            try:
                await asyncio.wait_for(stop.wait(), timeout=sleep_time)
            except asyncio.TimeoutError:
                pass

        logger.info("Outbox relay shutting down gracefully")
