"""
Ledger Types - Enumerations shared by records, cascades and the outbox.
"""

from enum import Enum


class Collection(str, Enum):
    """
    Entity collections held by the store.

    The value is the storage suffix and the export token key.
    """

    EXPENSES = "expenses"
    SUPPLIERS = "suppliers"
    PRODUCTS = "products"
    CUSTOMERS = "customers"
    SALES = "sales"
    USERS = "users"
    LOGS = "logs"
    PAYROLL = "payroll"
    INVITATIONS = "invitations"
    STOCK_MOVEMENTS = "stockMovements"
    SUPPLIER_TRANSACTIONS = "supplierTransactions"
    STAFF = "staff"

    def __str__(self) -> str:
        return self.value


class ExpenseType(str, Enum):
    EXPENSE = "EXPENSE"
    DEPOSIT = "DEPOSIT"
    DEBIT = "DEBIT"


class SupplierTransactionType(str, Enum):
    SUPPLY = "SUPPLY"
    PAYMENT = "PAYMENT"
    EXPENSE = "EXPENSE"
    REFUND = "REFUND"


class StockMovementType(str, Enum):
    """
    Reasons for a product quantity change.

    Outbound types always carry a negative delta, inbound types a positive
    one. CORRECTION keeps whatever sign the operator entered.
    """

    CORRECTION = "CORRECTION"
    DAMAGE = "DAMAGE"
    LOSS = "LOSS"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    INTERNAL_USE = "INTERNAL_USE"
    RETURN = "RETURN"
    SALE = "SALE"

    @property
    def direction(self) -> int:
        if self in OUTBOUND_MOVEMENTS:
            return -1
        if self in INBOUND_MOVEMENTS:
            return 1
        return 0


OUTBOUND_MOVEMENTS = frozenset(
    {
        StockMovementType.DAMAGE,
        StockMovementType.LOSS,
        StockMovementType.TRANSFER_OUT,
        StockMovementType.INTERNAL_USE,
        StockMovementType.SALE,
    }
)
INBOUND_MOVEMENTS = frozenset({StockMovementType.TRANSFER_IN, StockMovementType.RETURN})


class CustomerTransactionType(str, Enum):
    """Manual customer ledger adjustments. DEBIT raises the balance owed."""

    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"


class StaffStatus(str, Enum):
    ACTIVE = "active"
    ABSENT = "absent"
    ON_LEAVE = "on-leave"


class Role(str, Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"


class OutboxStatus(str, Enum):
    """Delivery state of an outbox entry."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class OutboxOperation(str, Enum):
    CREATE = "create"
    ACTION = "action"
    UPDATE = "update"
    DELETE = "delete"

    def __str__(self) -> str:
        return self.value
