"""
Derived Ledger Calculator

Pure functions over the store's collections. Nothing here is cached or
written back; every call recomputes from the records it is given.

Supplier balances are always derived from the supplier transaction
stream. Customer balances are stored running totals; the derived fold
below exists to audit them for drift.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from ledger_sync.contracts.records import (
    Customer,
    Expense,
    Product,
    Sale,
    Supplier,
    SupplierTransaction,
    to_cents,
)
from ledger_sync.contracts.types import CustomerTransactionType, SupplierTransactionType

ZERO = Decimal("0.00")

DEBIT_TYPES = frozenset({SupplierTransactionType.SUPPLY, SupplierTransactionType.EXPENSE})
CREDIT_TYPES = frozenset({SupplierTransactionType.PAYMENT})
MIRRORED_TYPES = frozenset({SupplierTransactionType.PAYMENT, SupplierTransactionType.EXPENSE})


@dataclass(frozen=True)
class SupplierLedger:
    debit: Decimal
    credit: Decimal
    balance: Decimal


def supplier_ledger(
    transactions: Iterable[SupplierTransaction], supplier_id: str
) -> SupplierLedger:
    """
    Fold one supplier's transactions.

    debit accumulates SUPPLY and EXPENSE, credit accumulates PAYMENT and
    balance = debit - credit. A positive balance is owed to the supplier.
    """
    debit = ZERO
    credit = ZERO
    for tx in transactions:
        if tx.supplier_id != supplier_id:
            continue
        if tx.type in DEBIT_TYPES:
            debit += tx.amount
        elif tx.type in CREDIT_TYPES:
            credit += tx.amount
    return SupplierLedger(debit=to_cents(debit), credit=to_cents(credit), balance=to_cents(debit - credit))


def supplier_balances(
    suppliers: Iterable[Supplier], transactions: Iterable[SupplierTransaction]
) -> dict[str, SupplierLedger]:
    transactions = list(transactions)
    return {s.id: supplier_ledger(transactions, s.id) for s in suppliers}


def total_payables(
    suppliers: Iterable[Supplier], transactions: Iterable[SupplierTransaction]
) -> Decimal:
    """Sum of positive supplier balances (what the business owes)."""
    balances = supplier_balances(suppliers, transactions).values()
    return to_cents(sum((b.balance for b in balances if b.balance > 0), ZERO))


def total_credits(
    suppliers: Iterable[Supplier], transactions: Iterable[SupplierTransaction]
) -> Decimal:
    """Sum of negative supplier balances as a positive amount (prepaid credit)."""
    balances = supplier_balances(suppliers, transactions).values()
    return to_cents(sum((-b.balance for b in balances if b.balance < 0), ZERO))


def derive_customer_balance(customer: Customer, sales: Iterable[Sale]) -> Decimal:
    """
    Recompute a customer's balance from its history.

    opening balance + outstanding on every sale to the customer
    + manual DEBIT adjustments - manual CREDIT adjustments.
    """
    balance = customer.opening_balance if customer.opening_balance is not None else ZERO
    for sale in sales:
        if sale.customer_id == customer.id:
            balance += sale.outstanding
    for tx in customer.transactions:
        if tx.type == CustomerTransactionType.DEBIT:
            balance += tx.amount
        else:
            balance -= tx.amount
    return to_cents(balance)


def customer_balance_drift(
    customers: Iterable[Customer], sales: Iterable[Sale]
) -> dict[str, Decimal]:
    """
    Customers whose stored balance disagrees with the derived fold.

    Returns {customer_id: stored - derived}. Customers without an opening
    balance (created elsewhere) cannot be audited and are left out.
    """
    sales = list(sales)
    drift = {}
    for customer in customers:
        if customer.opening_balance is None:
            continue
        difference = customer.balance - derive_customer_balance(customer, sales)
        if difference != 0:
            drift[customer.id] = to_cents(difference)
    return drift


def unmirrored_supplier_transactions(
    transactions: Iterable[SupplierTransaction], expenses: Iterable[Expense]
) -> list[SupplierTransaction]:
    """
    PAYMENT and EXPENSE transactions lacking exactly one mirrored Expense.

    A mirror references the transaction and matches its amount and date.
    """
    mirrors: dict[str, list[Expense]] = {}
    for expense in expenses:
        if expense.reference:
            mirrors.setdefault(expense.reference, []).append(expense)

    missing = []
    for tx in transactions:
        if tx.type not in MIRRORED_TYPES:
            continue
        matches = [
            e for e in mirrors.get(tx.id, []) if e.amount == tx.amount and e.date == tx.date
        ]
        if len(matches) != 1:
            missing.append(tx)
    return missing


@dataclass(frozen=True)
class ProductValuation:
    id: str
    name: str
    sku: str
    category: str
    quantity: int
    unit_cost: Decimal
    unit_price: Decimal
    total_cost: Decimal
    total_retail_value: Decimal
    potential_profit: Decimal


def inventory_valuation(products: Iterable[Product]) -> list[ProductValuation]:
    valuation = []
    for p in products:
        total_cost = to_cents(p.cost * p.quantity)
        total_retail = to_cents(p.price * p.quantity)
        valuation.append(
            ProductValuation(
                id=p.id,
                name=p.name,
                sku=p.sku,
                category=p.category,
                quantity=p.quantity,
                unit_cost=p.cost,
                unit_price=p.price,
                total_cost=total_cost,
                total_retail_value=total_retail,
                potential_profit=total_retail - total_cost,
            )
        )
    return valuation


def low_stock(products: Iterable[Product]) -> list[Product]:
    """Products at or below their minimum stock level."""
    return [p for p in products if p.quantity <= p.min_stock_level]
