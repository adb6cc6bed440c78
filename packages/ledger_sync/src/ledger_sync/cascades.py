"""
Cascade Rules

One business action fans out into writes against several collections.
Each multi-collection action runs as a Cascade: it gets its own identity,
every remote write it queues is tagged with that identity, and
cascade_status() reports how far the remote side got.

There is no compensating rollback. Optimistic local changes stand, and
unfinished steps are replayed by the relay.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from ledger_sync.contracts import Collection
from ledger_sync.contracts.types import ExpenseType, OutboxOperation, OutboxStatus
from ledger_sync.persistence.models import OutboxEntry
from ledger_sync.persistence.outbox import OutboxRepository
from ledger_sync.timeutil import today_iso

SUPPLIER_PAYMENT_CATEGORY = "Supplier Payment"
SUPPLIER_FEE_CATEGORY = "Supplier Fee"
PAYROLL_CATEGORY = "Payroll"

CASCADE_RULES: dict[str, frozenset[Collection]] = {
    "sale": frozenset(
        {Collection.SALES, Collection.PRODUCTS, Collection.STOCK_MOVEMENTS, Collection.CUSTOMERS}
    ),
    "stock_adjustment": frozenset({Collection.PRODUCTS, Collection.STOCK_MOVEMENTS}),
    "receive_stock": frozenset(
        {Collection.SUPPLIER_TRANSACTIONS, Collection.PRODUCTS, Collection.STOCK_MOVEMENTS}
    ),
    "supplier_payment": frozenset({Collection.SUPPLIER_TRANSACTIONS, Collection.EXPENSES}),
    "supplier_fee": frozenset({Collection.SUPPLIER_TRANSACTIONS, Collection.EXPENSES}),
    "payroll": frozenset({Collection.PAYROLL, Collection.EXPENSES}),
    "customer_adjustment": frozenset({Collection.CUSTOMERS}),
}


class CascadeViolation(RuntimeError):
    """A cascade tried to write a collection outside its rule."""


class Cascade:
    """
    Saga for one business action.

    Usage:
        cascade = Cascade("sale", outbox)
        cascade.enqueue(Collection.SALES, OutboxOperation.CREATE, "POST", "/api/sales", body)
    """

    def __init__(self, action: str, outbox: OutboxRepository, cascade_id: str | None = None):
        if action not in CASCADE_RULES:
            raise CascadeViolation(f"Unknown cascade action: {action}")
        self.id = cascade_id or str(uuid.uuid4())
        self.action = action
        self.outbox = outbox
        self.entries: list[OutboxEntry] = []

    @property
    def collections(self) -> frozenset[Collection]:
        return CASCADE_RULES[self.action]

    def enqueue(
        self,
        collection: Collection,
        operation: OutboxOperation,
        method: str,
        path: str,
        body: dict | None = None,
        record_key: str | None = None,
    ) -> OutboxEntry:
        if collection not in self.collections:
            raise CascadeViolation(
                f"Cascade '{self.action}' may not write {collection}"
            )
        entry = self.outbox.enqueue(
            collection=collection.value,
            operation=operation.value,
            method=method,
            path=path,
            body=body,
            record_key=record_key,
            cascade_id=self.id,
            cascade_action=self.action,
        )
        self.entries.append(entry)
        return entry


@dataclass
class CascadeStep:
    entry_id: int
    collection: str
    operation: str
    path: str
    status: str
    attempts: int
    last_error: str | None = None


@dataclass
class CascadeStatus:
    cascade_id: str
    action: str | None
    steps: list[CascadeStep] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return bool(self.steps) and all(s.status == OutboxStatus.SENT.value for s in self.steps)

    @property
    def failed_steps(self) -> list[CascadeStep]:
        return [s for s in self.steps if s.status == OutboxStatus.FAILED.value]

    @property
    def pending_steps(self) -> list[CascadeStep]:
        return [s for s in self.steps if s.status == OutboxStatus.PENDING.value]


def cascade_status(outbox: OutboxRepository, cascade_id: str) -> CascadeStatus:
    """Outcome of every remote step logged against a cascade."""
    entries = outbox.cascade_steps(cascade_id)
    return CascadeStatus(
        cascade_id=cascade_id,
        action=entries[0].cascade_action if entries else None,
        steps=[
            CascadeStep(
                entry_id=e.id,
                collection=e.collection,
                operation=e.operation,
                path=e.path,
                status=e.status,
                attempts=e.attempts,
                last_error=e.last_error,
            )
            for e in entries
        ],
    )


# --- Mirrored expense builders ---


def _expense_date(value: str | None) -> str:
    return value or today_iso()


def supplier_payment_expense(
    *,
    supplier_id: str,
    supplier_name: str,
    amount: Decimal,
    date: str | None,
    payment_method: str | None,
    reference: str,
    recorded_by_name: str,
) -> dict:
    """Expense fields mirroring a supplier PAYMENT transaction."""
    return {
        "type": ExpenseType.EXPENSE,
        "date": _expense_date(date),
        "category": SUPPLIER_PAYMENT_CATEGORY,
        "description": f"Paid {supplier_name}",
        "amount": amount,
        "payment_method": payment_method or "N/A",
        "status": "Paid",
        "supplier_id": supplier_id,
        "reference": reference,
        "recorded_by_name": recorded_by_name,
    }


def supplier_fee_expense(
    *,
    supplier_id: str,
    amount: Decimal,
    date: str | None,
    description: str,
    reference: str,
    recorded_by_name: str,
) -> dict:
    """Expense fields mirroring a supplier EXPENSE (fee) transaction."""
    return {
        "type": ExpenseType.EXPENSE,
        "date": _expense_date(date),
        "category": SUPPLIER_FEE_CATEGORY,
        "description": description,
        "amount": amount,
        "payment_method": "N/A",
        "status": "Paid",
        "supplier_id": supplier_id,
        "reference": reference,
        "recorded_by_name": recorded_by_name,
    }


def payroll_expense(
    *,
    staff_name: str,
    amount: Decimal,
    payment_date: str,
    reference: str,
    recorded_by_name: str,
) -> dict:
    """Expense fields mirroring a payroll entry."""
    return {
        "type": ExpenseType.EXPENSE,
        "date": payment_date,
        "category": PAYROLL_CATEGORY,
        "description": f"Salary: {staff_name}",
        "amount": amount,
        "payment_method": "Bank Transfer",
        "status": "Paid",
        "reference": reference,
        "recorded_by_name": recorded_by_name,
    }
