"""
Tests for temporary identities and reconciliation of confirmed creates.
"""

from decimal import Decimal

from ledger_sync.contracts import Collection
from ledger_sync.contracts.records import Customer, Expense, Supplier
from ledger_sync.contracts.types import OutboxOperation
from ledger_sync.identity import TemporaryIds, keep_local_changes, reconcile_created


class TestTemporaryIds:
    def test_same_millisecond_still_unique(self):
        """Test identities stay distinct and increasing under a frozen clock."""
        ids = TemporaryIds(clock=lambda: 1714560000.0)

        keys = [ids("exp") for _ in range(3)]

        assert keys == ["exp_1714560000000", "exp_1714560000001", "exp_1714560000002"]

    def test_clock_going_backwards(self):
        ticks = iter([10.0, 9.0])
        ids = TemporaryIds(clock=lambda: next(ticks))

        assert ids("sup") == "sup_10000"
        assert ids("sup") == "sup_10001"


class TestReconcileCreated:
    def test_swaps_identity_and_rewrites_references(self, engine):
        """Test the server key replaces the temporary one everywhere."""
        engine.store.prepend(Collection.SUPPLIERS, Supplier(id="sup_1", name="Dangote"))
        engine.store.prepend(
            Collection.EXPENSES,
            Expense(
                id="e1",
                type="EXPENSE",
                date="2024-05-01",
                category="Supplier Fee",
                amount=Decimal("5"),
                supplier_id="sup_1",
            ),
        )
        queued = engine.outbox.enqueue(
            Collection.SUPPLIERS, OutboxOperation.DELETE, "DELETE", "/api/suppliers/sup_1"
        )

        key = reconcile_created(
            engine.store,
            engine.outbox,
            Collection.SUPPLIERS,
            "sup_1",
            {"id": "srv_7", "name": "Dangote"},
        )

        assert key == "srv_7"
        assert [s.id for s in engine.store.records(Collection.SUPPLIERS)] == ["srv_7"]
        assert engine.store.find(Collection.EXPENSES, "e1").supplier_id == "srv_7"
        assert engine.store.identity_map == {"sup_1": "srv_7"}
        assert engine.outbox.get(queued.id).path == "/api/suppliers/srv_7"

    def test_drops_twin_already_brought_in_by_resync(self, engine):
        """Test a resync that raced the create does not leave a duplicate."""
        engine.store.prepend(Collection.SUPPLIERS, Supplier(id="srv_7", name="Dangote"))
        engine.store.prepend(Collection.SUPPLIERS, Supplier(id="sup_1", name="Dangote"))

        reconcile_created(
            engine.store,
            engine.outbox,
            Collection.SUPPLIERS,
            "sup_1",
            {"id": "srv_7", "name": "Dangote", "phone": "0800"},
        )

        (supplier,) = engine.store.records(Collection.SUPPLIERS)
        assert supplier.id == "srv_7"
        assert supplier.phone == "0800"

    def test_invalid_echo_keeps_local_record(self, engine):
        engine.store.prepend(Collection.SUPPLIERS, Supplier(id="sup_1", name="Dangote"))

        key = reconcile_created(
            engine.store, engine.outbox, Collection.SUPPLIERS, "sup_1", {"success": True}
        )

        assert key is None
        assert [s.id for s in engine.store.records(Collection.SUPPLIERS)] == ["sup_1"]

    def test_local_changes_survive_the_echo(self, engine):
        """Test a field changed after the create was sent is not reset by the reply."""
        local = Customer(id="cust_1", name="Offline Ltd", balance=Decimal("400"))
        engine.store.prepend(Collection.CUSTOMERS, local)
        sent = Customer(id="cust_1", name="Offline Ltd").to_wire()

        reconcile_created(
            engine.store,
            engine.outbox,
            Collection.CUSTOMERS,
            "cust_1",
            {**sent, "id": "srv_3", "phone": "0800"},
            sent=sent,
        )

        customer = engine.store.find(Collection.CUSTOMERS, "srv_3")
        assert customer.balance == Decimal("400.00")
        assert customer.phone == "0800"


class TestKeepLocalChanges:
    def test_unchanged_fields_take_server_values(self):
        local = Supplier(id="sup_1", name="Dangote")
        sent = local.to_wire()

        merged = keep_local_changes(local, {**sent, "id": "srv_1", "name": "DANGOTE"}, sent)

        assert merged["id"] == "srv_1"
        assert merged["name"] == "DANGOTE"
