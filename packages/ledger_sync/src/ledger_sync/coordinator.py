"""
Optimistic Mutation Coordinator

One operation per business action. Every operation follows the same
contract:

1. Validate the input and everything it references. Invalid input raises
   MutationRejected before any state changes.
2. Apply the new or changed records to the store synchronously, newest
   first, and queue every remote write in the outbox. This completes
   before the first await, so callers observe the change immediately.
3. Attempt every queued write once, independently of each other. A
   confirmed create is swapped for the server's record; a failed write
   leaves the optimistic record in place and stays queued for the relay.

Multi-collection actions run as cascades (see cascades.py) so every
remote step is logged against one cascade identity.
"""

import asyncio
import logging
import secrets
from decimal import Decimal
from typing import Any, Iterable

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from ledger_sync.cascades import (
    Cascade,
    CascadeStatus,
    cascade_status,
    payroll_expense,
    supplier_fee_expense,
    supplier_payment_expense,
)
from ledger_sync.contracts import SYSTEM_ACTOR, Actor, Collection, get_spec
from ledger_sync.contracts.records import (
    ActivityLog,
    AppUser,
    Customer,
    CustomerTransaction,
    Expense,
    Invitation,
    LedgerRecord,
    PayrollEntry,
    Product,
    Sale,
    StaffMember,
    StockMovement,
    Supplier,
    SupplierTransaction,
    to_cents,
)
from ledger_sync.contracts.types import (
    CustomerTransactionType,
    InvitationStatus,
    OutboxOperation,
    Role,
    StaffStatus,
    StockMovementType,
    SupplierTransactionType,
)
from ledger_sync.identity import TemporaryIds
from ledger_sync.notices import NoticeBoard
from ledger_sync.persistence.models import OutboxEntry
from ledger_sync.persistence.outbox import OutboxRepository
from ledger_sync.relay import OutboxRelay
from ledger_sync.store import LedgerStore
from ledger_sync.timeutil import now_iso, today_iso

logger = logging.getLogger(__name__)


class MutationRejected(ValueError):
    """Mutation input failed validation. Nothing was changed."""


def _field_names(model: type[LedgerRecord]) -> dict[str, str]:
    """Map of accepted input names (field name or camelCase alias) to field name."""
    names = {}
    for name, info in model.model_fields.items():
        names[name] = name
        names[info.alias or to_camel(name)] = name
    return names


def _normalize(model: type[LedgerRecord], fields: dict[str, Any]) -> dict[str, Any]:
    names = _field_names(model)
    return {names.get(key, key): value for key, value in fields.items()}


class MutationCoordinator:
    """Applies business actions optimistically and queues their remote writes."""

    def __init__(
        self,
        store: LedgerStore,
        outbox: OutboxRepository,
        relay: OutboxRelay,
        ids: TemporaryIds | None = None,
        actor: Actor = SYSTEM_ACTOR,
        notices: NoticeBoard | None = None,
    ):
        self.store = store
        self.outbox = outbox
        self.relay = relay
        self.ids = ids or TemporaryIds()
        self.actor = actor
        self.notices = notices or relay.notices

    # --- Building blocks ---

    def _build(
        self,
        collection: Collection,
        fields: dict[str, Any],
        key: str | None = None,
        **defaults: Any,
    ) -> LedgerRecord:
        """Validate a partial record and give it a temporary identity."""
        spec = get_spec(collection)
        data = {**defaults, **_normalize(spec.model, fields)}
        data.pop(spec.key_field, None)
        for name in spec.model.AUDIT_TIMESTAMPS:
            if data.get(name) is None:
                data[name] = now_iso()
        data[spec.key_field] = key or self.ids(spec.prefix)
        try:
            return spec.model.model_validate(data)
        except ValidationError as e:
            raise MutationRejected(f"Invalid {collection} record: {e}") from e

    def _require(self, collection: Collection, key: str | None) -> LedgerRecord:
        record = self.store.find(collection, key)
        if record is None:
            raise MutationRejected(f"Unknown {collection} record: {key}")
        return record

    def _queue(
        self,
        collection: Collection,
        operation: OutboxOperation,
        method: str,
        path: str,
        body: dict | None = None,
        record_key: str | None = None,
        cascade: Cascade | None = None,
    ) -> OutboxEntry:
        if cascade is not None:
            return cascade.enqueue(collection, operation, method, path, body, record_key)
        return self.outbox.enqueue(
            collection=collection.value,
            operation=operation.value,
            method=method,
            path=path,
            body=body,
            record_key=record_key,
        )

    def _queue_create(
        self, collection: Collection, record: LedgerRecord, cascade: Cascade | None = None
    ) -> OutboxEntry:
        return self._queue(
            collection,
            OutboxOperation.CREATE,
            "POST",
            get_spec(collection).path,
            body=record.to_wire(),
            record_key=record.key,
            cascade=cascade,
        )

    async def _dispatch(self, entries: Iterable[OutboxEntry]) -> None:
        """Attempt every entry once. Failures are handled by the relay."""
        ids = [entry.id for entry in entries]
        await asyncio.gather(*(self.relay.deliver(entry_id) for entry_id in ids))

    def _current(self, collection: Collection, record: LedgerRecord) -> LedgerRecord:
        """The record as it stands now, after any reconciliation."""
        return self.store.find(collection, record.key) or record

    async def _create(
        self,
        collection: Collection,
        fields: dict[str, Any],
        key: str | None = None,
        **defaults: Any,
    ):
        record = self._build(collection, fields, key=key, **defaults)
        self.store.prepend(collection, record)
        entry = self._queue_create(collection, record)
        await self._dispatch([entry])
        return self._current(collection, record)

    def _stock_change(
        self,
        cascade: Cascade,
        product: Product,
        quantity: int,
        movement_type: StockMovementType,
        reason: str,
    ) -> tuple[StockMovement, list[OutboxEntry]]:
        """
        Signed-delta primitive behind every product quantity change.

        Applies the delta, appends the matching StockMovement and queues both
        remote writes on the given cascade.
        """
        direction = movement_type.direction
        delta = abs(quantity) * direction if direction else quantity
        if delta == 0:
            raise MutationRejected("Stock delta must not be zero")

        movement = self._build(
            Collection.STOCK_MOVEMENTS,
            {
                "product_id": product.key,
                "product_name": product.name,
                "type": movement_type,
                "quantity": delta,
                "reason": reason,
                "user_id": self.actor.id,
                "user_name": self.actor.name,
            },
        )

        current = self.store.find(Collection.PRODUCTS, product.key) or product
        self.store.patch(Collection.PRODUCTS, product.key, {"quantity": current.quantity + delta})
        self.store.prepend(Collection.STOCK_MOVEMENTS, movement)

        entries = [
            cascade.enqueue(
                Collection.PRODUCTS,
                OutboxOperation.ACTION,
                "POST",
                get_spec(Collection.PRODUCTS).item_path(product.key, "stock"),
                body={"delta": delta},
                record_key=product.key,
            ),
            cascade.enqueue(
                Collection.STOCK_MOVEMENTS,
                OutboxOperation.CREATE,
                "POST",
                get_spec(Collection.STOCK_MOVEMENTS).path,
                body=movement.to_wire(),
                record_key=movement.key,
            ),
        ]
        return movement, entries

    def cascade_for(self, record_key: str) -> CascadeStatus | None:
        """Status of the cascade that created the given record, if any."""
        cascade_id = self.outbox.cascade_id_for(self.store.resolve_key(record_key))
        if cascade_id is None:
            return None
        return cascade_status(self.outbox, cascade_id)

    # --- Directory collections ---

    async def add_expense(self, fields: dict[str, Any]) -> Expense:
        return await self._create(
            Collection.EXPENSES, fields, recorded_by_name=self.actor.name
        )

    async def add_supplier(self, fields: dict[str, Any]) -> Supplier:
        return await self._create(
            Collection.SUPPLIERS, fields, created_by_name=self.actor.name
        )

    async def add_product(self, fields: dict[str, Any]) -> Product:
        return await self._create(
            Collection.PRODUCTS, fields, created_by_name=self.actor.name
        )

    async def add_customer(self, fields: dict[str, Any]) -> Customer:
        data = _normalize(Customer, fields)
        data.pop("transactions", None)
        if data.get("opening_balance") is None:
            data["opening_balance"] = data.get("balance", Decimal("0"))
        return await self._create(
            Collection.CUSTOMERS, data, created_by_name=self.actor.name, transactions=[]
        )

    async def add_staff_member(self, fields: dict[str, Any]) -> StaffMember:
        data = _normalize(StaffMember, fields)
        data.pop("attendance", None)
        return await self._create(Collection.STAFF, data, attendance=[])

    async def add_log(self, action: str, details: str = "") -> ActivityLog:
        return await self._create(
            Collection.LOGS, {"action": action, "details": details}, user_id=self.actor.id
        )

    async def _update(
        self,
        collection: Collection,
        key: str,
        changes: dict[str, Any],
        action: str | None = None,
        body: dict | None = None,
    ) -> LedgerRecord:
        """Validate field changes, apply them locally and queue the remote update."""
        record = self._require(collection, key)
        spec = get_spec(collection)
        changes = _normalize(spec.model, changes)
        unknown = set(changes) - set(spec.model.model_fields)
        if unknown:
            raise MutationRejected(f"Unknown {collection} fields: {sorted(unknown)}")
        if spec.key_field in changes:
            raise MutationRejected(f"{collection} identity cannot be changed")
        try:
            validated = spec.model.model_validate({**record.model_dump(), **changes})
        except ValidationError as e:
            raise MutationRejected(f"Invalid {collection} update: {e}") from e

        updated = self.store.patch(
            collection, record.key, {name: getattr(validated, name) for name in changes}
        )
        if body is None:
            body = validated.model_dump(mode="json", by_alias=True, include=set(changes))
        entry = self._queue(
            collection,
            OutboxOperation.UPDATE if action is None else OutboxOperation.ACTION,
            "POST",
            spec.item_path(record.key, action),
            body=body,
            record_key=record.key,
        )
        await self._dispatch([entry])
        return self.store.find(collection, record.key) or updated

    async def update_product(self, product_id: str, changes: dict[str, Any]) -> Product:
        if "quantity" in _normalize(Product, changes):
            raise MutationRejected("Product quantity changes go through adjust_stock")
        return await self._update(Collection.PRODUCTS, product_id, changes)

    # --- Stock ---

    async def adjust_stock(
        self,
        product_id: str,
        quantity: int,
        movement_type: StockMovementType | str,
        reason: str = "",
    ) -> StockMovement:
        """
        Change a product's quantity and record the movement.

        Outbound movement types always decrease stock and inbound types
        always increase it; CORRECTION applies the quantity as given.
        """
        try:
            movement_type = StockMovementType(movement_type)
        except ValueError as e:
            raise MutationRejected(f"Unknown stock movement type: {movement_type}") from e
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise MutationRejected(f"Stock quantity must be a whole number, got {quantity!r}")
        product = self._require(Collection.PRODUCTS, product_id)

        cascade = Cascade("stock_adjustment", self.outbox)
        movement, entries = self._stock_change(cascade, product, quantity, movement_type, reason)
        await self._dispatch(entries)
        return self._current(Collection.STOCK_MOVEMENTS, movement)

    async def receive_stock(
        self, supplier_id: str, items: list[dict[str, Any]]
    ) -> SupplierTransaction:
        """Record a SUPPLY from a supplier and bring every item into stock."""
        supplier = self._require(Collection.SUPPLIERS, supplier_id)
        if not items:
            raise MutationRejected("Received stock needs at least one item")

        products = [
            self._require(Collection.PRODUCTS, item.get("product_id") or item.get("productId"))
            for item in items
        ]

        supply_items = [
            {
                "product_id": product.key,
                "product_name": product.name,
                "quantity": item.get("quantity"),
                "cost": item.get("cost"),
            }
            for product, item in zip(products, items)
        ]
        transaction = self._build(
            Collection.SUPPLIER_TRANSACTIONS,
            {
                "supplier_id": supplier.key,
                "supplier_name": supplier.name,
                "type": SupplierTransactionType.SUPPLY,
                "amount": Decimal("0"),
                "description": f"Stock Received: {len(items)} SKUs",
                "initiated_by_name": self.actor.name,
                "items": supply_items,
            },
        )
        total = sum((to_cents(i.cost * i.quantity) for i in transaction.items), Decimal("0"))
        transaction = transaction.model_copy(update={"amount": to_cents(total)})

        cascade = Cascade("receive_stock", self.outbox)
        self.store.prepend(Collection.SUPPLIER_TRANSACTIONS, transaction)
        entries = [self._queue_create(Collection.SUPPLIER_TRANSACTIONS, transaction, cascade)]
        for product, item in zip(products, transaction.items):
            _, stock_entries = self._stock_change(
                cascade,
                product,
                item.quantity,
                StockMovementType.TRANSFER_IN,
                f"From vendor {supplier.name}",
            )
            entries.extend(stock_entries)

        await self._dispatch(entries)
        return self._current(Collection.SUPPLIER_TRANSACTIONS, transaction)

    # --- Sales and customers ---

    async def add_sale(self, fields: dict[str, Any]) -> Sale:
        """
        Record a sale.

        Cascades into one SALE stock movement per line item and, when the
        sale names a customer, an increment of that customer's stored
        balance by total - amount_paid.
        """
        data = _normalize(Sale, fields)
        customer = None
        if data.get("customer_id"):
            customer = self._require(Collection.CUSTOMERS, data["customer_id"])
            data["customer_id"] = customer.key
            data.setdefault("customer_name", customer.name)

        sale = self._build(
            Collection.SALES,
            data,
            initiated_by=self.actor.id,
            initiated_by_name=self.actor.name,
        )
        products = [self._require(Collection.PRODUCTS, item.product_id) for item in sale.items]
        sale = sale.model_copy(
            update={
                "items": [
                    item.model_copy(
                        update={
                            "product_id": product.key,
                            "product_name": item.product_name or product.name,
                        }
                    )
                    for item, product in zip(sale.items, products)
                ]
            }
        )

        cascade = Cascade("sale", self.outbox)
        self.store.prepend(Collection.SALES, sale)
        entries = [self._queue_create(Collection.SALES, sale, cascade)]

        for item, product in zip(sale.items, products):
            _, stock_entries = self._stock_change(
                cascade, product, item.quantity, StockMovementType.SALE, f"Sale {sale.key}"
            )
            entries.extend(stock_entries)

        if customer is not None:
            current = self.store.find(Collection.CUSTOMERS, customer.key)
            delta = sale.outstanding
            total_spent = current.total_spent + sale.total
            last_visit = now_iso()
            self.store.patch(
                Collection.CUSTOMERS,
                customer.key,
                {
                    "balance": to_cents(current.balance + delta),
                    "total_spent": to_cents(total_spent),
                    "last_visit": last_visit,
                },
            )
            entries.append(
                cascade.enqueue(
                    Collection.CUSTOMERS,
                    OutboxOperation.ACTION,
                    "POST",
                    get_spec(Collection.CUSTOMERS).item_path(customer.key, "balance"),
                    body={
                        "delta": str(delta),
                        "totalSpent": str(to_cents(total_spent)),
                        "lastVisit": last_visit,
                    },
                    record_key=customer.key,
                )
            )

        await self._dispatch(entries)
        return self._current(Collection.SALES, sale)

    async def record_customer_transaction(
        self,
        customer_id: str,
        amount: Decimal | str | int,
        transaction_type: CustomerTransactionType | str,
        description: str = "",
        date: str | None = None,
    ) -> Customer:
        """
        Manual ledger adjustment on a customer's stored balance.

        DEBIT raises the amount the customer owes, CREDIT lowers it.
        """
        customer = self._require(Collection.CUSTOMERS, customer_id)
        try:
            transaction = CustomerTransaction(
                id=self.ids("ctx"),
                customer_id=customer.key,
                date=date or now_iso(),
                amount=amount,
                type=transaction_type,
                description=description,
            )
        except ValidationError as e:
            raise MutationRejected(f"Invalid customer transaction: {e}") from e

        sign = 1 if transaction.type == CustomerTransactionType.DEBIT else -1
        cascade = Cascade("customer_adjustment", self.outbox)
        self.store.patch(
            Collection.CUSTOMERS,
            customer.key,
            {
                "balance": to_cents(customer.balance + sign * transaction.amount),
                "transactions": [transaction, *customer.transactions],
            },
        )
        entry = cascade.enqueue(
            Collection.CUSTOMERS,
            OutboxOperation.ACTION,
            "POST",
            get_spec(Collection.CUSTOMERS).item_path(customer.key, "transactions"),
            body=transaction.to_storage(),
            record_key=customer.key,
        )
        await self._dispatch([entry])
        return self.store.find(Collection.CUSTOMERS, customer.key)

    # --- Supplier ledger ---

    async def _supplier_transaction(
        self,
        action: str,
        transaction_type: SupplierTransactionType,
        fields: dict[str, Any],
        mirror,
    ) -> SupplierTransaction:
        data = _normalize(SupplierTransaction, fields)
        supplier = self._require(Collection.SUPPLIERS, data.get("supplier_id"))
        data["supplier_id"] = supplier.key
        data.setdefault("supplier_name", supplier.name)
        data["date"] = data.get("date") or today_iso()
        data["type"] = transaction_type

        transaction = self._build(
            Collection.SUPPLIER_TRANSACTIONS, data, initiated_by_name=self.actor.name
        )
        if transaction.amount <= 0:
            raise MutationRejected(f"{transaction_type.value} amount must be positive")
        expense = self._build(Collection.EXPENSES, mirror(transaction))

        cascade = Cascade(action, self.outbox)
        self.store.prepend(Collection.SUPPLIER_TRANSACTIONS, transaction)
        self.store.prepend(Collection.EXPENSES, expense)
        entries = [
            self._queue_create(Collection.SUPPLIER_TRANSACTIONS, transaction, cascade),
            self._queue_create(Collection.EXPENSES, expense, cascade),
        ]
        await self._dispatch(entries)
        return self._current(Collection.SUPPLIER_TRANSACTIONS, transaction)

    async def add_supplier_payment(self, fields: dict[str, Any]) -> SupplierTransaction:
        """Record a PAYMENT to a supplier, mirrored into the expense ledger."""
        return await self._supplier_transaction(
            "supplier_payment",
            SupplierTransactionType.PAYMENT,
            fields,
            lambda tx: supplier_payment_expense(
                supplier_id=tx.supplier_id,
                supplier_name=tx.supplier_name,
                amount=tx.amount,
                date=tx.date,
                payment_method=tx.payment_method,
                reference=tx.key,
                recorded_by_name=self.actor.name,
            ),
        )

    async def add_supplier_fee(self, fields: dict[str, Any]) -> SupplierTransaction:
        """Record a supplier fee (EXPENSE), mirrored into the expense ledger."""
        return await self._supplier_transaction(
            "supplier_fee",
            SupplierTransactionType.EXPENSE,
            fields,
            lambda tx: supplier_fee_expense(
                supplier_id=tx.supplier_id,
                amount=tx.amount,
                date=tx.date,
                description=tx.description or f"Fee from {tx.supplier_name}",
                reference=tx.key,
                recorded_by_name=self.actor.name,
            ),
        )

    # --- Staff and payroll ---

    async def add_payroll(self, fields: dict[str, Any]) -> PayrollEntry:
        """Record a payroll entry, mirrored into the expense ledger."""
        entry = self._build(Collection.PAYROLL, fields, processed_by_name=self.actor.name)
        expense = self._build(
            Collection.EXPENSES,
            payroll_expense(
                staff_name=entry.staff_name,
                amount=entry.amount,
                payment_date=entry.payment_date,
                reference=entry.key,
                recorded_by_name=self.actor.name,
            ),
        )

        cascade = Cascade("payroll", self.outbox)
        self.store.prepend(Collection.PAYROLL, entry)
        self.store.prepend(Collection.EXPENSES, expense)
        entries = [
            self._queue_create(Collection.PAYROLL, entry, cascade),
            self._queue_create(Collection.EXPENSES, expense, cascade),
        ]
        await self._dispatch(entries)
        return self._current(Collection.PAYROLL, entry)

    async def mark_attendance(self, staff_id: str, day: str | None = None) -> StaffMember:
        """Mark a staff member present. Marking the same day twice is a no-op."""
        member = self._require(Collection.STAFF, staff_id)
        day = day or today_iso()
        if day in member.attendance:
            return member
        return await self._update(
            Collection.STAFF,
            member.key,
            {"attendance": [*member.attendance, day]},
            action="attendance",
            body={"date": day},
        )

    async def update_staff_status(
        self, staff_id: str, status: StaffStatus | str
    ) -> StaffMember:
        return await self._update(
            Collection.STAFF, staff_id, {"status": status}, action="update"
        )

    # --- Invitations and users ---

    async def create_invitation(self, name: str, email: str, role: Role | str = Role.STAFF) -> str:
        """Create a pending invitation. Returns its token."""
        email = (email or "").strip()
        for invitation in self.store.records(Collection.INVITATIONS):
            if (
                invitation.email.lower() == email.lower()
                and invitation.status == InvitationStatus.PENDING
            ):
                raise MutationRejected(f"A pending invitation already exists for {email}")

        invitation = await self._create(
            Collection.INVITATIONS,
            {"name": name, "email": email, "role": role},
            key=secrets.token_urlsafe(8),
        )
        return invitation.token

    def validate_invitation(self, token: str) -> Invitation:
        """Return the pending invitation for token, or raise MutationRejected."""
        invitation = self.store.find(Collection.INVITATIONS, token)
        if invitation is None or invitation.status != InvitationStatus.PENDING:
            raise MutationRejected("Invalid Token")
        return invitation

    async def accept_invitation(self, token: str, name: str) -> AppUser:
        """
        Accept a pending invitation, adding the invited user.

        The server creates the user and answers {"success": true, "user": {...}},
        so the accept is queued as the user's create and reconciled like one.
        """
        invitation = self.validate_invitation(token)
        user = self._build(
            Collection.USERS,
            {
                "name": name or invitation.name,
                "email": invitation.email,
                "role": invitation.role,
                "is_active": True,
                "created_at": now_iso(),
            },
        )

        self.store.patch(
            Collection.INVITATIONS, invitation.key, {"status": InvitationStatus.ACCEPTED}
        )
        self.store.prepend(Collection.USERS, user)
        entry = self._queue(
            Collection.USERS,
            OutboxOperation.CREATE,
            "POST",
            f"{get_spec(Collection.INVITATIONS).path}/accept",
            body={"token": invitation.key, "name": user.name},
            record_key=user.key,
        )
        await self._dispatch([entry])
        return self._current(Collection.USERS, user)

    async def revoke_invitation(self, token: str) -> bool:
        invitation = self.store.find(Collection.INVITATIONS, token)
        if invitation is None:
            return False
        self.store.remove(Collection.INVITATIONS, invitation.key)
        entry = self._queue(
            Collection.INVITATIONS,
            OutboxOperation.DELETE,
            "DELETE",
            get_spec(Collection.INVITATIONS).item_path(invitation.key),
            record_key=invitation.key,
        )
        await self._dispatch([entry])
        return True

    async def toggle_user_status(self, user_id: str) -> AppUser:
        user = self._require(Collection.USERS, user_id)
        return await self._update(
            Collection.USERS, user.key, {"is_active": not user.is_active}, action="status"
        )

    async def remove_user(self, user_id: str) -> bool:
        user = self.store.find(Collection.USERS, user_id)
        if user is None:
            return False
        self.store.remove(Collection.USERS, user.key)
        entry = self._queue(
            Collection.USERS,
            OutboxOperation.DELETE,
            "DELETE",
            get_spec(Collection.USERS).item_path(user.key),
            record_key=user.key,
        )
        await self._dispatch([entry])
        return True
