"""
Tests for optimistic mutations and identity reconciliation.
"""

import asyncio
from decimal import Decimal

import pytest

from ledger_sync.contracts import Actor, Collection
from ledger_sync.contracts.records import AppUser
from ledger_sync.contracts.types import (
    InvitationStatus,
    OutboxStatus,
    StaffStatus,
    StockMovementType,
)
from ledger_sync.coordinator import MutationRejected
from ledger_sync.notices import NoticeLevel

EXPENSE = {
    "type": "EXPENSE",
    "date": "2024-05-01",
    "category": "Utilities",
    "description": "Electricity",
    "amount": "120.50",
}

ACCEPT_REPLY = {
    "success": True,
    "user": {"id": "u_server_9", "name": "Femi A.", "email": "femi@example.com", "role": "STAFF"},
}


class TestOptimisticCreate:
    """Local state changes before and regardless of the remote write."""

    def test_record_visible_before_remote_call_resolves(self, engine, gateway):
        """Test the new record is in the store while the remote call hangs."""

        async def scenario():
            gateway.hold = asyncio.Event()
            task = asyncio.create_task(engine.coordinator.add_expense(EXPENSE))
            await asyncio.sleep(0)

            expenses = engine.store.records(Collection.EXPENSES)
            assert len(expenses) == 1
            assert expenses[0].id.startswith("exp_")
            assert expenses[0].amount == Decimal("120.50")
            assert engine.pending_count() == 1

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

    def test_server_identity_replaces_temporary_identity(self, engine):
        """Test a confirmed create leaves exactly one record, under the server key."""
        expense = asyncio.run(engine.coordinator.add_expense(EXPENSE))

        keys = [e.id for e in engine.store.records(Collection.EXPENSES)]
        assert keys == ["srv_1"]
        assert expense.id == "srv_1"
        assert engine.pending_count() == 0

    def test_replaced_in_place_not_by_position(self, engine):
        """Test reconciliation keeps the record's position when others were added."""
        asyncio.run(engine.coordinator.add_expense(EXPENSE))
        asyncio.run(engine.coordinator.add_expense({**EXPENSE, "amount": "10"}))

        expenses = engine.store.records(Collection.EXPENSES)
        assert [e.id for e in expenses] == ["srv_2", "srv_1"]
        assert expenses[0].amount == Decimal("10.00")

    def test_failed_create_keeps_optimistic_record(self, engine, gateway):
        """Test a rejected remote write leaves the temporary record unchanged."""
        gateway.fail_all = True

        expense = asyncio.run(engine.coordinator.add_expense(EXPENSE))

        stored = engine.store.records(Collection.EXPENSES)
        assert stored == [expense]
        assert expense.id.startswith("exp_")

        # Still there after the relay runs again
        asyncio.run(engine.relay.drain())
        assert engine.store.records(Collection.EXPENSES) == [expense]

    def test_failed_create_is_queued_and_reported(self, engine, gateway):
        """Test the failed write stays pending and a notice is posted."""
        gateway.fail_all = True

        asyncio.run(engine.coordinator.add_expense(EXPENSE))

        assert engine.pending_count() == 1
        entry = engine.outbox.undelivered()[0]
        assert entry.attempts == 1
        assert entry.status == OutboxStatus.PENDING.value
        notices = engine.notices.active()
        assert len(notices) == 1
        assert notices[0].level == NoticeLevel.WARNING

    def test_create_request_omits_temporary_identity(self, engine, gateway):
        """Test the create body is the partial record without its id."""
        asyncio.run(engine.coordinator.add_expense(EXPENSE))

        (body,) = gateway.posted("/api/expenses")
        assert "id" not in body
        assert body["amount"] == "120.50"
        assert body["category"] == "Utilities"

    def test_actor_is_stamped(self, engine):
        """Test records carry the signed-in operator."""
        engine.coordinator.actor = Actor(id="u_9", name="Chidi")

        expense = asyncio.run(engine.coordinator.add_expense(EXPENSE))

        assert expense.recorded_by_name == "Chidi"


class TestValidation:
    """Invalid mutations are rejected before anything changes."""

    def test_missing_required_field(self, engine, gateway):
        """Test an expense without an amount is rejected."""
        fields = {k: v for k, v in EXPENSE.items() if k != "amount"}

        with pytest.raises(MutationRejected):
            asyncio.run(engine.coordinator.add_expense(fields))

        assert engine.store.records(Collection.EXPENSES) == []
        assert engine.pending_count() == 0
        assert gateway.calls == []

    def test_sale_with_unknown_product(self, engine, customer, products):
        """Test a sale naming a missing product changes nothing."""
        sale = {
            "customer_id": "c1",
            "items": [
                {"product_id": "p1", "quantity": 1, "price": "200"},
                {"product_id": "nope", "quantity": 1, "price": "200"},
            ],
            "total": "400",
            "amount_paid": "400",
        }

        with pytest.raises(MutationRejected):
            asyncio.run(engine.coordinator.add_sale(sale))

        assert engine.store.records(Collection.SALES) == []
        assert engine.store.find(Collection.PRODUCTS, "p1").quantity == 10
        assert engine.store.find(Collection.CUSTOMERS, "c1").balance == Decimal("200")

    def test_zero_stock_delta(self, engine, products):
        """Test a zero correction is rejected."""
        with pytest.raises(MutationRejected):
            asyncio.run(engine.coordinator.adjust_stock("p1", 0, StockMovementType.CORRECTION))

        assert engine.store.records(Collection.STOCK_MOVEMENTS) == []

    def test_product_quantity_not_editable(self, engine, products):
        """Test quantity can only change through stock adjustments."""
        with pytest.raises(MutationRejected):
            asyncio.run(engine.coordinator.update_product("p1", {"quantity": 99}))

    def test_camel_case_input_accepted(self, engine):
        """Test wire-style field names are accepted as input."""
        product = asyncio.run(
            engine.coordinator.add_product({"name": "Nails", "price": "5", "minStockLevel": 20})
        )

        assert product.min_stock_level == 20


class TestStockAdjustment:
    """Every quantity change goes through one signed-delta primitive."""

    @pytest.mark.parametrize(
        "movement_type,quantity,expected",
        [
            (StockMovementType.DAMAGE, 4, -4),
            (StockMovementType.LOSS, -1, -1),
            (StockMovementType.RETURN, -2, 2),
            (StockMovementType.TRANSFER_IN, 3, 3),
            (StockMovementType.CORRECTION, -3, -3),
        ],
    )
    def test_direction_is_forced_by_type(self, engine, products, movement_type, quantity, expected):
        """Test outbound types subtract, inbound types add, corrections keep their sign."""
        movement = asyncio.run(engine.coordinator.adjust_stock("p1", quantity, movement_type))

        assert movement.quantity == expected
        assert engine.store.find(Collection.PRODUCTS, "p1").quantity == 10 + expected

    def test_movement_and_remote_delta(self, engine, gateway, products):
        """Test one movement record and one stock delta call per adjustment."""
        asyncio.run(engine.coordinator.adjust_stock("p2", 2, "DAMAGE", "Wet bags"))

        movements = engine.store.records(Collection.STOCK_MOVEMENTS)
        assert len(movements) == 1
        assert movements[0].product_id == "p2"
        assert movements[0].reason == "Wet bags"
        assert gateway.posted("/api/products/p2/stock") == [{"delta": -2}]

    def test_update_product(self, engine, gateway, products):
        """Test product edits apply locally and post the changed fields."""
        product = asyncio.run(engine.coordinator.update_product("p1", {"price": "210"}))

        assert product.price == Decimal("210.00")
        assert gateway.posted("/api/products/p1") == [{"price": "210.00"}]


class TestCustomers:
    def test_add_customer_records_opening_balance(self, engine):
        """Test a new customer starts with its balance as opening balance."""
        customer = asyncio.run(engine.coordinator.add_customer({"name": "Bisi", "balance": "75"}))

        assert customer.opening_balance == Decimal("75.00")
        assert customer.transactions == []

    def test_manual_adjustments(self, engine, gateway, customer):
        """Test DEBIT raises and CREDIT lowers the stored balance."""
        asyncio.run(engine.coordinator.record_customer_transaction("c1", "50", "DEBIT", "Delivery"))
        updated = asyncio.run(
            engine.coordinator.record_customer_transaction("c1", "120", "CREDIT", "Cash")
        )

        assert updated.balance == Decimal("130.00")
        assert [t.type.value for t in updated.transactions] == ["CREDIT", "DEBIT"]
        assert len(gateway.posted("/api/customers/c1/transactions")) == 2
        assert engine.customer_balance_drift() == {}

    def test_adjustment_must_be_positive(self, engine, customer):
        with pytest.raises(MutationRejected):
            asyncio.run(engine.coordinator.record_customer_transaction("c1", "0", "DEBIT"))


class TestStaff:
    def test_mark_attendance_is_idempotent_per_day(self, engine, gateway, staff_member):
        """Test marking the same day twice records it once."""
        asyncio.run(engine.coordinator.mark_attendance("st1", "2024-05-01"))
        member = asyncio.run(engine.coordinator.mark_attendance("st1", "2024-05-01"))

        assert member.attendance == ["2024-05-01"]
        assert gateway.posted("/api/staff/st1/attendance") == [{"date": "2024-05-01"}]

    def test_update_staff_status(self, engine, gateway, staff_member):
        member = asyncio.run(engine.coordinator.update_staff_status("st1", "on-leave"))

        assert member.status == StaffStatus.ON_LEAVE
        assert gateway.posted("/api/staff/st1/update") == [{"status": "on-leave"}]

    def test_add_staff_member(self, engine):
        member = asyncio.run(engine.coordinator.add_staff_member({"name": "Tunde", "role": "Driver"}))

        assert member.id == "srv_1"
        assert member.attendance == []


class TestInvitations:
    """Invitation lifecycle: create, validate, accept, revoke."""

    def test_lifecycle(self, engine, gateway):
        """Test an accepted invitation adds a user and can no longer be used."""
        token = asyncio.run(engine.coordinator.create_invitation("Femi", "femi@example.com"))

        invitation = engine.coordinator.validate_invitation(token)
        assert invitation.status == InvitationStatus.PENDING

        user = asyncio.run(engine.coordinator.accept_invitation(token, "Femi A."))

        assert user.email == "femi@example.com"
        assert engine.store.records(Collection.USERS) == [user]
        assert engine.store.find(Collection.INVITATIONS, token).status == InvitationStatus.ACCEPTED
        assert gateway.posted("/api/invitations/accept") == [{"token": token, "name": "Femi A."}]
        with pytest.raises(MutationRejected):
            engine.coordinator.validate_invitation(token)

    def test_accepted_user_takes_server_identity(self, engine, gateway):
        """Test the user in the accept reply replaces the optimistic user."""
        token = asyncio.run(engine.coordinator.create_invitation("Femi", "femi@example.com"))
        gateway.replies["/api/invitations/accept"] = ACCEPT_REPLY

        user = asyncio.run(engine.coordinator.accept_invitation(token, "Femi A."))

        assert user.id == "u_server_9"
        assert [u.id for u in engine.store.records(Collection.USERS)] == ["u_server_9"]

        asyncio.run(engine.coordinator.toggle_user_status(user.id))

        assert gateway.posted("/api/users/u_server_9/status") == [{"isActive": False}]

    def test_user_actions_wait_for_offline_accept(self, fast_engine, gateway):
        """Test writes on a user accepted offline go out under the server identity."""
        token = asyncio.run(fast_engine.coordinator.create_invitation("Femi", "femi@example.com"))
        gateway.fail_all = True
        user = asyncio.run(fast_engine.coordinator.accept_invitation(token, "Femi A."))
        asyncio.run(fast_engine.coordinator.toggle_user_status(user.id))

        gateway.fail_all = False
        gateway.replies["/api/invitations/accept"] = ACCEPT_REPLY
        asyncio.run(fast_engine.relay.drain())

        assert fast_engine.pending_count() == 0
        assert gateway.posted("/api/users/u_server_9/status") == [{"isActive": False}]
        assert not any(user.id in path for _, path, _ in gateway.calls)
        reconciled = fast_engine.store.find(Collection.USERS, user.id)
        assert reconciled.id == "u_server_9"
        assert reconciled.is_active is False

    def test_duplicate_pending_invitation(self, engine):
        """Test a second pending invitation for the same email is rejected."""
        asyncio.run(engine.coordinator.create_invitation("Femi", "femi@example.com"))

        with pytest.raises(MutationRejected):
            asyncio.run(engine.coordinator.create_invitation("Femi", "FEMI@example.com"))

        assert len(engine.store.records(Collection.INVITATIONS)) == 1

    def test_unknown_token(self, engine):
        with pytest.raises(MutationRejected):
            engine.coordinator.validate_invitation("missing")

    def test_revoke(self, engine, gateway):
        """Test revoking removes the invitation and sends a DELETE."""
        token = asyncio.run(engine.coordinator.create_invitation("Femi", "femi@example.com"))

        assert asyncio.run(engine.coordinator.revoke_invitation(token)) is True

        assert engine.store.records(Collection.INVITATIONS) == []
        assert ("DELETE", f"/api/invitations/{token}", None) in gateway.calls


class TestUsers:
    @pytest.fixture
    def user(self, engine):
        record = AppUser(id="u1", name="Kemi", email="kemi@example.com")
        engine.store.prepend(Collection.USERS, record)
        return record

    def test_toggle_user_status(self, engine, gateway, user):
        updated = asyncio.run(engine.coordinator.toggle_user_status("u1"))

        assert updated.is_active is False
        assert gateway.posted("/api/users/u1/status") == [{"isActive": False}]

    def test_remove_user(self, engine, gateway, user):
        assert asyncio.run(engine.coordinator.remove_user("u1")) is True

        assert engine.store.records(Collection.USERS) == []
        assert ("DELETE", "/api/users/u1", None) in gateway.calls

    def test_remove_unknown_user(self, engine, gateway):
        assert asyncio.run(engine.coordinator.remove_user("ghost")) is False
        assert gateway.calls == []


class TestActivityLog:
    def test_add_log(self, engine):
        engine.coordinator.actor = Actor(id="u_3", name="Ngozi")

        log = asyncio.run(engine.coordinator.add_log("SALE", "Sold 3 bags"))

        assert log.user_id == "u_3"
        assert log.timestamp is not None
