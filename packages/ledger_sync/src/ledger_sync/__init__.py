"""
Ledger Sync - Offline-first State Synchronization Engine

Client-side consistency engine for a small-business operations ledger
(sales, inventory, suppliers, payroll, expenses).

It provides:
- A durable local snapshot of every entity collection
- Optimistic mutations with temporary identities reconciled on success
- A durable outbox drained by a background relay with exponential backoff
- Cascades that turn one business action into several collection writes
- Bulk resync from the remote ledger service
- Derived balances (suppliers) alongside stored running totals (customers)
- Portable snapshot export/import tokens

The remote ledger service is only reached through the gateway. When it is
unreachable the engine keeps working against local state ("hybrid mode").
"""

from ledger_sync.engine import LedgerEngine

__all__ = ["LedgerEngine"]
