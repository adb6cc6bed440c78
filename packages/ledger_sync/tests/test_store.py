"""
Tests for the ledger store and its snapshot persistence.
"""

from decimal import Decimal

from ledger_sync.contracts import Collection
from ledger_sync.contracts.records import Expense, Product
from ledger_sync.persistence import SqlSnapshotStore
from ledger_sync.persistence.models import SnapshotEntry
from ledger_sync.store import LedgerStore


def make_expense(key, amount="10", date="2024-05-01"):
    return Expense(id=key, type="EXPENSE", date=date, category="Rent", amount=Decimal(amount))


class TestWriteThrough:
    """Every change is persisted before the call returns."""

    def test_reload_sees_changes(self, db):
        """Test a second store over the same database starts from the persisted state."""
        store = LedgerStore(SqlSnapshotStore(db))
        store.prepend(Collection.EXPENSES, make_expense("e1"))
        store.prepend(Collection.EXPENSES, make_expense("e2"))
        store.mark_synced("2024-05-02T10:00:00+00:00")

        reloaded = LedgerStore(SqlSnapshotStore(db))

        assert [e.id for e in reloaded.records(Collection.EXPENSES)] == ["e2", "e1"]
        assert reloaded.last_sync == "2024-05-02T10:00:00+00:00"

    def test_money_survives_reload(self, db):
        store = LedgerStore(SqlSnapshotStore(db))
        store.prepend(Collection.EXPENSES, make_expense("e1", amount="120.5"))

        (expense,) = LedgerStore(SqlSnapshotStore(db)).records(Collection.EXPENSES)
        assert expense.amount == Decimal("120.50")

    def test_unknown_fields_are_kept(self, db):
        """Test fields the server sent that the models do not declare survive a reload."""
        store = LedgerStore(SqlSnapshotStore(db))
        record = Product.model_validate(
            {"id": "p1", "name": "Cement", "price": "200", "warehouse": "B2"}
        )
        store.prepend(Collection.PRODUCTS, record)

        (reloaded,) = LedgerStore(SqlSnapshotStore(db)).records(Collection.PRODUCTS)
        assert reloaded.to_storage()["warehouse"] == "B2"

    def test_namespaces_are_isolated(self, db):
        one = LedgerStore(SqlSnapshotStore(db), namespace="shop-a")
        one.prepend(Collection.EXPENSES, make_expense("e1"))

        other = LedgerStore(SqlSnapshotStore(db), namespace="shop-b")

        assert other.records(Collection.EXPENSES) == []


class TestCorruptSnapshots:
    def test_undecodable_value_falls_back_to_empty(self, db):
        """Test a collection whose stored JSON is garbage loads as empty."""
        snapshots = SqlSnapshotStore(db)
        store = LedgerStore(snapshots)
        store.prepend(Collection.EXPENSES, make_expense("e1"))
        store.prepend(Collection.PRODUCTS, Product(id="p1", name="Cement", price=Decimal("1")))

        entry = db.get(SnapshotEntry, store.storage_key(Collection.EXPENSES))
        entry.value = "{not json"
        db.commit()

        reloaded = LedgerStore(SqlSnapshotStore(db))
        assert reloaded.records(Collection.EXPENSES) == []
        assert len(reloaded.records(Collection.PRODUCTS)) == 1

    def test_invalid_records_fall_back_to_empty(self, db):
        """Test a collection with a record that fails validation loads as empty."""
        snapshots = SqlSnapshotStore(db)
        snapshots.set("ledger:expenses", [{"id": "e1", "amount": "oops"}])
        snapshots.set("ledger:suppliers", {"not": "a list"})

        store = LedgerStore(snapshots)

        assert store.records(Collection.EXPENSES) == []
        assert store.records(Collection.SUPPLIERS) == []


class TestSubscriptions:
    def test_listener_receives_new_list(self, db):
        store = LedgerStore(SqlSnapshotStore(db))
        seen = []
        store.subscribe(lambda collection, records: seen.append((collection, [r.id for r in records])))

        store.prepend(Collection.EXPENSES, make_expense("e1"))

        assert seen == [(Collection.EXPENSES, ["e1"])]

    def test_unsubscribe(self, db):
        store = LedgerStore(SqlSnapshotStore(db))
        seen = []
        unsubscribe = store.subscribe(lambda collection, records: seen.append(collection))

        unsubscribe()
        unsubscribe()
        store.prepend(Collection.EXPENSES, make_expense("e1"))

        assert seen == []

    def test_failing_listener_does_not_break_the_write(self, db):
        store = LedgerStore(SqlSnapshotStore(db))

        def broken(collection, records):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.prepend(Collection.EXPENSES, make_expense("e1"))

        assert len(store.records(Collection.EXPENSES)) == 1

    def test_returned_lists_are_copies(self, db):
        """Test callers cannot mutate the store through a returned list."""
        store = LedgerStore(SqlSnapshotStore(db))
        store.prepend(Collection.EXPENSES, make_expense("e1"))

        store.records(Collection.EXPENSES).clear()

        assert len(store.records(Collection.EXPENSES)) == 1


class TestRecordUpdates:
    def test_replace_record_in_place(self, db):
        """Test the replacement keeps its position in the list."""
        store = LedgerStore(SqlSnapshotStore(db))
        for key in ("e1", "e2", "e3"):
            store.prepend(Collection.EXPENSES, make_expense(key))

        assert store.replace_record(Collection.EXPENSES, "e2", make_expense("srv_9", amount="99"))

        assert [e.id for e in store.records(Collection.EXPENSES)] == ["e3", "srv_9", "e1"]

    def test_replace_missing_record(self, db):
        store = LedgerStore(SqlSnapshotStore(db))
        store.prepend(Collection.EXPENSES, make_expense("e1"))

        assert not store.replace_record(Collection.EXPENSES, "gone", make_expense("srv_1"))
        assert [e.id for e in store.records(Collection.EXPENSES)] == ["e1"]

    def test_patch_follows_identity_map(self, db):
        """Test a record can still be addressed by its old temporary key."""
        store = LedgerStore(SqlSnapshotStore(db))
        store.prepend(Collection.PRODUCTS, Product(id="srv_1", name="Cement", price=Decimal("1")))
        store.record_identity("prod_1", "srv_1")

        updated = store.patch(Collection.PRODUCTS, "prod_1", {"quantity": 4})

        assert updated.id == "srv_1"
        assert store.find(Collection.PRODUCTS, "prod_1").quantity == 4

    def test_rewrite_references(self, db):
        store = LedgerStore(SqlSnapshotStore(db))
        store.prepend(
            Collection.EXPENSES,
            Expense(
                id="e1",
                type="EXPENSE",
                date="2024-05-01",
                category="Supplier Payment",
                amount=Decimal("5"),
                reference="stx_1",
            ),
        )
        store.prepend(Collection.EXPENSES, make_expense("e2"))

        changed = store.rewrite_references("stx_1", "srv_4")

        assert changed == 1
        assert store.find(Collection.EXPENSES, "e1").reference == "srv_4"


class TestRestore:
    def test_restore_overwrites_everything(self, db):
        """Test collections missing from the restore become empty."""
        store = LedgerStore(SqlSnapshotStore(db))
        store.prepend(Collection.EXPENSES, make_expense("e1"))
        store.prepend(Collection.PRODUCTS, Product(id="p1", name="Cement", price=Decimal("1")))
        store.record_identity("exp_1", "e1")

        store.restore({Collection.EXPENSES: [make_expense("e9")]}, "2024-01-01T00:00:00+00:00")

        assert [e.id for e in store.records(Collection.EXPENSES)] == ["e9"]
        assert store.records(Collection.PRODUCTS) == []
        assert store.identity_map == {}
        assert store.last_sync == "2024-01-01T00:00:00+00:00"

    def test_dump_is_json_safe(self, db):
        store = LedgerStore(SqlSnapshotStore(db))
        store.prepend(Collection.EXPENSES, make_expense("e1", amount="7.5"))

        dumped = store.dump()

        assert set(dumped) == {c.value for c in Collection}
        assert dumped["expenses"][0]["amount"] == "7.50"
        assert dumped["expenses"][0]["type"] == "EXPENSE"
