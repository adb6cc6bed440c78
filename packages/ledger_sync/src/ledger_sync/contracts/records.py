"""
Ledger Record Models

Pydantic models for every entity collection. The same models validate
mutation input, remote payloads, persisted snapshots and export tokens.

Field names are snake_case in Python and camelCase on the wire and in
storage. Unknown fields sent by the server are kept so that a record
survives a persist/load or export/import cycle unchanged.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any, ClassVar, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from ledger_sync.contracts.types import (
    CustomerTransactionType,
    ExpenseType,
    InvitationStatus,
    Role,
    StaffStatus,
    StockMovementType,
    SupplierTransactionType,
)

CENT = Decimal("0.01")


def to_cents(value: Decimal) -> Decimal:
    """Quantize a currency amount to minor units."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


Money = Annotated[Decimal, AfterValidator(to_cents)]


class LedgerRecord(BaseModel):
    """Base class for all ledger records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    KEY_FIELD: ClassVar[str] = "id"
    # Fields stamped with the current time when a record is created locally
    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ()

    @property
    def key(self) -> str:
        return getattr(self, self.KEY_FIELD)

    def to_storage(self) -> dict[str, Any]:
        """Full JSON-safe representation (camelCase)."""
        return self.model_dump(mode="json", by_alias=True)

    def to_wire(self) -> dict[str, Any]:
        """Create-request body: everything except the identity."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={self.KEY_FIELD} if self.KEY_FIELD == "id" else None,
            exclude_none=True,
        )


class CustomerTransaction(LedgerRecord):
    """Manual adjustment on a customer's stored balance."""

    id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    date: str | None = None
    amount: Money = Field(..., gt=0)
    type: CustomerTransactionType
    description: str = ""

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("date",)


class Customer(LedgerRecord):
    """
    Customer with a stored running balance.

    balance is mutated incrementally by sale cascades and manual
    adjustments. opening_balance is the balance at creation and anchors the
    derived fold used to audit drift.
    """

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    phone: str = ""
    email: str = ""
    address: str = ""
    type: Literal["Retail", "Wholesale", "Distributor"] = "Retail"
    notes: str | None = None
    balance: Money = Decimal("0")
    total_spent: Money = Decimal("0")
    opening_balance: Money | None = None
    last_visit: str | None = None
    status: Literal["Active", "Inactive"] = "Active"
    created_by_name: str | None = None
    created_at: str | None = None
    transactions: list[CustomerTransaction] = Field(default_factory=list)

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("created_at",)


class Supplier(LedgerRecord):
    """Supplier. Its balance is never stored, see ledger.supplier_ledger()."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    contact_person: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    status: Literal["Active", "Inactive"] = "Active"
    created_by_name: str | None = None
    created_at: str | None = None

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("created_at",)


class Product(LedgerRecord):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    sku: str = ""
    category: str = ""
    price: Money = Field(..., ge=0)
    cost: Money = Decimal("0")
    quantity: int = 0
    min_stock_level: int = 0
    created_by_name: str | None = None
    created_at: str | None = None

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("created_at",)


class SaleItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    product_id: str = Field(..., min_length=1)
    product_name: str = ""
    quantity: int = Field(..., gt=0)
    price: Money = Field(..., ge=0)
    subtotal: Money | None = None

    @model_validator(mode="after")
    def _fill_subtotal(self) -> "SaleItem":
        if self.subtotal is None:
            self.subtotal = to_cents(self.price * self.quantity)
        return self


class Sale(LedgerRecord):
    """Append-only sale. Source event for stock and customer balance cascades."""

    id: str = Field(..., min_length=1)
    date: str | None = None
    customer_id: str | None = None
    customer_name: str = "Walk-in Customer"
    items: list[SaleItem] = Field(..., min_length=1)
    total: Money = Field(..., ge=0)
    amount_paid: Money = Field(..., ge=0)
    payment_method: str = "Cash"
    initiated_by: str | None = None
    initiated_by_name: str | None = None

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("date",)

    @property
    def outstanding(self) -> Decimal:
        """Amount added to the customer's balance."""
        return self.total - self.amount_paid


class Expense(LedgerRecord):
    """Unified financial ledger entry."""

    id: str = Field(..., min_length=1)
    type: ExpenseType
    date: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    description: str = ""
    amount: Money = Field(..., gt=0)
    payment_method: str = "N/A"
    reference: str | None = None
    status: str = "Paid"
    recorded_by_name: str | None = None
    supplier_id: str | None = None


class SupplyItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    product_id: str = Field(..., min_length=1)
    product_name: str = ""
    quantity: int = Field(..., gt=0)
    cost: Money = Field(..., ge=0)


class SupplierTransaction(LedgerRecord):
    """Append-only supplier ledger event. Source stream for supplier balances."""

    id: str = Field(..., min_length=1)
    supplier_id: str = Field(..., min_length=1)
    supplier_name: str = ""
    date: str | None = None
    amount: Money = Field(..., ge=0)
    type: SupplierTransactionType
    description: str = ""
    reference: str | None = None
    payment_method: str | None = None
    initiated_by_name: str | None = None
    items: list[SupplyItem] | None = None

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("date",)


class StockMovement(LedgerRecord):
    """Audit record mirroring exactly one product quantity change."""

    id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    product_name: str = ""
    type: StockMovementType
    quantity: int
    date: str | None = None
    reason: str = ""
    user_id: str = "system"
    user_name: str = "System"

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("date",)


class PayrollEntry(LedgerRecord):
    id: str = Field(..., min_length=1)
    staff_id: str = Field(..., min_length=1)
    staff_name: str = Field(..., min_length=1)
    department: str = ""
    amount: Money = Field(..., gt=0)
    payment_date: str = Field(..., min_length=1)
    period_start: str = ""
    period_end: str = ""
    processed_by_name: str | None = None


class StaffMember(LedgerRecord):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    role: str = ""
    status: StaffStatus = StaffStatus.ACTIVE
    attendance: list[str] = Field(default_factory=list)
    created_at: str | None = None

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("created_at",)


class Invitation(LedgerRecord):
    """Staff invitation, keyed by its token. Revocable."""

    token: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    role: Role = Role.STAFF
    status: InvitationStatus = InvitationStatus.PENDING
    created_at: str | None = None

    KEY_FIELD: ClassVar[str] = "token"
    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("created_at",)


class AppUser(LedgerRecord):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    email: str = ""
    role: Role = Role.STAFF
    is_active: bool = True
    system_status: Literal["OPERATIONAL", "SUSPENDED", "ON_HOLD"] = "OPERATIONAL"
    last_login: str | None = None
    last_logout: str | None = None
    is_online: bool | None = None
    created_at: str | None = None


class ActivityLog(LedgerRecord):
    id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    details: str = ""
    timestamp: str | None = None
    user_id: str = "system"

    AUDIT_TIMESTAMPS: ClassVar[tuple[str, ...]] = ("timestamp",)
