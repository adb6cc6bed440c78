"""
Pytest fixtures for ledger sync tests.
"""

import asyncio
import itertools
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ledger_sync.contracts import COLLECTIONS, Collection
from ledger_sync.contracts.records import Customer, Product, StaffMember, Supplier
from ledger_sync.engine import LedgerEngine
from ledger_sync.gateway import GatewayError
from ledger_sync.persistence import LedgerBase


class FakeGateway:
    """
    In-memory remote ledger service.

    Creates are echoed back with a server identity (srv_1, srv_2, ...),
    targeted actions answer {"success": true} unless replies holds a canned
    answer for the path. Set fail_all, fail_paths or hold to simulate an
    unreachable or hung service.
    """

    def __init__(self):
        self.calls: list[tuple[str, str, object]] = []
        self.collections: dict[Collection, object] = {}
        self.fail_all = False
        self.fail_paths: set[str] = set()
        self.fail_fetch: set[Collection] = set()
        self.replies: dict[str, object] = {}
        self.retryable = True
        self.hold: asyncio.Event | None = None
        self._ids = itertools.count(1)
        self._create_paths = {spec.path: spec for spec in COLLECTIONS.values()}

    async def send(self, method, path, body=None):
        self.calls.append((method, path, body))
        if self.hold is not None:
            await self.hold.wait()
        if self.fail_all or path in self.fail_paths:
            raise GatewayError(
                f"{method} {path} failed",
                code="HTTP_ERROR",
                status_code=None if self.retryable else 400,
                retryable=self.retryable,
            )

        if path in self.replies:
            return self.replies[path]

        spec = self._create_paths.get(path)
        if method == "POST" and spec is not None:
            if spec.key_field == "id":
                return {**body, "id": f"srv_{next(self._ids)}"}
            return dict(body)
        return {"success": True}

    async def get(self, path):
        return await self.send("GET", path)

    async def post(self, path, body=None):
        return await self.send("POST", path, body)

    async def delete(self, path):
        return await self.send("DELETE", path)

    async def fetch_collection(self, collection):
        self.calls.append(("GET", COLLECTIONS[collection].path, None))
        if self.fail_all or collection in self.fail_fetch:
            raise GatewayError(f"GET {collection} failed", code="HTTP_ERROR")
        return self.collections.get(collection, [])

    async def close(self):
        pass

    def posted(self, path):
        """Bodies of every POST sent to path."""
        return [body for method, p, body in self.calls if method == "POST" and p == path]


def make_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    LedgerBase.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)()


@pytest.fixture
def db():
    """In-memory SQLite session with the ledger tables."""
    session = make_session()
    yield session
    session.close()


@pytest.fixture
def other_db():
    """A second, independent database (another process instance)."""
    session = make_session()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(db, gateway):
    """Engine wired to the fake gateway."""
    return LedgerEngine(db=db, gateway=gateway)


@pytest.fixture
def fast_engine(db, gateway):
    """Engine whose failed writes are due again immediately."""
    return LedgerEngine(db=db, gateway=gateway, backoff_base=0.0, backoff_max=0.0, max_attempts=3)


@pytest.fixture
def customer(engine):
    record = Customer(
        id="c1",
        name="Ada Stores",
        balance=Decimal("200"),
        opening_balance=Decimal("200"),
    )
    engine.store.prepend(Collection.CUSTOMERS, record)
    return record


@pytest.fixture
def products(engine):
    records = [
        Product(id="p1", name="Cement", price=Decimal("200"), cost=Decimal("150"), quantity=10),
        Product(id="p2", name="Sand", price=Decimal("200"), cost=Decimal("120"), quantity=5),
    ]
    for record in reversed(records):
        engine.store.prepend(Collection.PRODUCTS, record)
    return records


@pytest.fixture
def supplier(engine):
    record = Supplier(id="s1", name="Dangote")
    engine.store.prepend(Collection.SUPPLIERS, record)
    return record


@pytest.fixture
def staff_member(engine):
    record = StaffMember(id="st1", name="Bola", role="Cashier")
    engine.store.prepend(Collection.STAFF, record)
    return record
