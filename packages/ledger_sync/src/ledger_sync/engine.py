"""
Ledger Engine

Wires the sync engine together around one explicit LedgerStore:

    store  <- coordinator  (optimistic mutations, cascades)
           <- relay        (outbox delivery, identity reconciliation)
           <- resolver     (bulk resync)
           <- codec        (snapshot export/import)

Usage:
    engine = LedgerEngine.from_settings()
    await engine.sign_in(Actor(id="u_1", name="Ada"))
    await engine.coordinator.add_expense({...})
    await engine.close()
"""

import logging

from sqlalchemy.orm import Session

from ledger_sync import ledger
from ledger_sync.cascades import CascadeStatus, cascade_status
from ledger_sync.codec import SnapshotCodec
from ledger_sync.contracts import SYSTEM_ACTOR, Actor, Collection
from ledger_sync.coordinator import MutationCoordinator
from ledger_sync.db import get_db
from ledger_sync.gateway import LedgerGateway
from ledger_sync.identity import TemporaryIds
from ledger_sync.notices import NoticeBoard
from ledger_sync.persistence import (
    OutboxRepository,
    RedisSnapshotStore,
    SnapshotStore,
    SqlSnapshotStore,
)
from ledger_sync.redis import get_redis_client
from ledger_sync.relay import OutboxRelay
from ledger_sync.resolver import ReconciliationResolver, SyncReport
from ledger_sync.settings import Settings, get_settings
from ledger_sync.store import LedgerStore

logger = logging.getLogger(__name__)


class LedgerEngine:
    """Facade over the store and every component that mutates it."""

    def __init__(
        self,
        db: Session,
        gateway: LedgerGateway,
        snapshots: SnapshotStore | None = None,
        namespace: str = "ledger",
        max_attempts: int = 8,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        keep_unsynced: bool = False,
        ids: TemporaryIds | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notices = NoticeBoard()
        self.store = LedgerStore(snapshots or SqlSnapshotStore(db), namespace=namespace)
        self.outbox = OutboxRepository(db)
        self.relay = OutboxRelay(
            self.store,
            self.outbox,
            gateway,
            notices=self.notices,
            max_attempts=max_attempts,
            backoff_base=backoff_base,
            backoff_max=backoff_max,
        )
        self.coordinator = MutationCoordinator(
            self.store, self.outbox, self.relay, ids=ids, notices=self.notices
        )
        self.resolver = ReconciliationResolver(
            self.store, gateway, outbox=self.outbox, keep_unsynced=keep_unsynced
        )
        self.codec = SnapshotCodec(self.store)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LedgerEngine":
        """Build the default wiring from configuration."""
        settings = settings or get_settings()
        db = get_db()

        snapshots: SnapshotStore
        if settings.SNAPSHOT_BACKEND == "redis":
            snapshots = RedisSnapshotStore(get_redis_client())
        elif settings.SNAPSHOT_BACKEND == "sql":
            snapshots = SqlSnapshotStore(db)
        else:
            raise ValueError(f"Unknown snapshot backend: {settings.SNAPSHOT_BACKEND}")

        return cls(
            db=db,
            gateway=LedgerGateway(settings.API_URL, timeout=settings.API_TIMEOUT),
            snapshots=snapshots,
            namespace=settings.NAMESPACE,
            max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
            backoff_base=settings.OUTBOX_BACKOFF_BASE,
            backoff_max=settings.OUTBOX_BACKOFF_MAX,
            keep_unsynced=settings.RESYNC_KEEP_UNSYNCED,
        )

    # --- Session ---

    @property
    def actor(self) -> Actor:
        return self.coordinator.actor

    async def sign_in(self, actor: Actor) -> SyncReport:
        """Set the operator and run the one full resync that follows login."""
        self.coordinator.actor = actor
        logger.info(f"Signed in as {actor.name}", extra={"actor_id": actor.id})
        return await self.resolver.sync_all()

    def sign_out(self) -> None:
        self.coordinator.actor = SYSTEM_ACTOR

    async def sync(self) -> SyncReport:
        return await self.resolver.sync_all()

    # --- Indicators ---

    def pending_count(self) -> int:
        """Remote writes waiting for delivery ("N pending")."""
        return self.outbox.pending_count()

    def unsynced_count(self) -> int:
        """Remote writes not delivered yet, including ones that gave up."""
        return self.outbox.unsynced_count()

    def cascade_status(self, cascade_id: str) -> CascadeStatus:
        return cascade_status(self.outbox, cascade_id)

    # --- Derived views ---

    def supplier_balances(self) -> dict[str, ledger.SupplierLedger]:
        return ledger.supplier_balances(
            self.store.records(Collection.SUPPLIERS),
            self.store.records(Collection.SUPPLIER_TRANSACTIONS),
        )

    def total_payables(self):
        return ledger.total_payables(
            self.store.records(Collection.SUPPLIERS),
            self.store.records(Collection.SUPPLIER_TRANSACTIONS),
        )

    def total_credits(self):
        return ledger.total_credits(
            self.store.records(Collection.SUPPLIERS),
            self.store.records(Collection.SUPPLIER_TRANSACTIONS),
        )

    def customer_balance_drift(self):
        return ledger.customer_balance_drift(
            self.store.records(Collection.CUSTOMERS),
            self.store.records(Collection.SALES),
        )

    # --- Snapshot migration ---

    def export_key(self) -> str:
        return self.codec.export_key()

    def import_key(self, token: str) -> bool:
        return self.codec.import_key(token)

    async def close(self) -> None:
        await self.gateway.close()
        self.db.close()
