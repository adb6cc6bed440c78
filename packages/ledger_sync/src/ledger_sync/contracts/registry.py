"""
Collection Registry - Maps each collection to its model, endpoint and
temporary-identity prefix.
"""

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from ledger_sync.contracts.records import (
    ActivityLog,
    AppUser,
    Customer,
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
)
from ledger_sync.contracts.types import Collection


@dataclass(frozen=True)
class CollectionSpec:
    collection: Collection
    model: type[LedgerRecord]
    path: str
    prefix: str
    # Key under which a create reply wraps the record, e.g. {"success": true, "user": {...}}
    envelope: str | None = None

    @property
    def key_field(self) -> str:
        return self.model.KEY_FIELD

    def item_path(self, key: str, action: str | None = None) -> str:
        path = f"{self.path}/{key}"
        return f"{path}/{action}" if action else path

    def unwrap(self, payload: Any) -> Any:
        """The record inside a create reply, whether or not it is wrapped."""
        if self.envelope and isinstance(payload, dict):
            wrapped = payload.get(self.envelope)
            if isinstance(wrapped, dict):
                return wrapped
        return payload

    def parse(self, payload: Any) -> LedgerRecord:
        """Validate one record. Raises pydantic.ValidationError."""
        return self.model.model_validate(payload)

    def parse_many(self, payload: Any) -> list[LedgerRecord]:
        """
        Validate a list payload, raising on the first invalid record.

        Used for persisted snapshots and import tokens where any corruption
        rejects the whole collection.
        """
        if not isinstance(payload, list):
            raise TypeError(f"Expected a list for {self.collection}, got {type(payload).__name__}")
        return [self.parse(item) for item in payload]

    def parse_valid(self, payload: Any) -> tuple[list[LedgerRecord], int]:
        """Validate a list payload, skipping invalid records. Returns (records, skipped)."""
        if not isinstance(payload, list):
            return [], 0
        records = []
        skipped = 0
        for item in payload:
            try:
                records.append(self.parse(item))
            except ValidationError:
                skipped += 1
        return records, skipped


COLLECTIONS: dict[Collection, CollectionSpec] = {
    spec.collection: spec
    for spec in (
        CollectionSpec(Collection.EXPENSES, Expense, "/api/expenses", "exp"),
        CollectionSpec(Collection.SUPPLIERS, Supplier, "/api/suppliers", "sup"),
        CollectionSpec(Collection.PRODUCTS, Product, "/api/products", "prod"),
        CollectionSpec(Collection.CUSTOMERS, Customer, "/api/customers", "cust"),
        CollectionSpec(Collection.SALES, Sale, "/api/sales", "sale"),
        CollectionSpec(Collection.USERS, AppUser, "/api/users", "u", envelope="user"),
        CollectionSpec(Collection.LOGS, ActivityLog, "/api/logs", "log"),
        CollectionSpec(Collection.PAYROLL, PayrollEntry, "/api/payroll", "pay"),
        CollectionSpec(Collection.INVITATIONS, Invitation, "/api/invitations", "inv"),
        CollectionSpec(Collection.STOCK_MOVEMENTS, StockMovement, "/api/stock-movements", "mov"),
        CollectionSpec(
            Collection.SUPPLIER_TRANSACTIONS, SupplierTransaction, "/api/supplier-transactions", "stx"
        ),
        CollectionSpec(Collection.STAFF, StaffMember, "/api/staff", "staff"),
    )
}


def get_spec(collection: Collection | str) -> CollectionSpec:
    return COLLECTIONS[Collection(collection)]
