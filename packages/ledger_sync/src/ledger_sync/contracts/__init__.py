"""
Ledger contracts: collection types, record models and the collection registry.
"""

from dataclasses import dataclass

from ledger_sync.contracts.registry import COLLECTIONS, CollectionSpec, get_spec
from ledger_sync.contracts.types import Collection


@dataclass(frozen=True)
class Actor:
    """The signed-in operator, stamped on records as *ByName fields."""

    id: str = "system"
    name: str = "System"


SYSTEM_ACTOR = Actor()

__all__ = [
    "Actor",
    "SYSTEM_ACTOR",
    "COLLECTIONS",
    "Collection",
    "CollectionSpec",
    "get_spec",
]
