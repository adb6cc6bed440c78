"""
Pytest configuration for integration tests.

The engine talks to an in-memory ledger service through the real HTTP
gateway (httpx.MockTransport), so requests, status codes and JSON bodies
go through the same code paths as against a live server.
"""

import itertools
import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ledger_sync.contracts import COLLECTIONS, Collection, get_spec
from ledger_sync.engine import LedgerEngine
from ledger_sync.gateway import LedgerGateway
from ledger_sync.persistence import LedgerBase


class LedgerServer:
    """
    Minimal remote ledger service.

    Creates assign srv-N identities, stock and balance actions apply their
    deltas, plain item POSTs merge the body into the record.
    """

    def __init__(self):
        self.online = True
        self.data: dict[Collection, list[dict]] = {c: [] for c in COLLECTIONS}
        self.requests: list[tuple[str, str]] = []
        self._ids = itertools.count(1)
        self._routes = {spec.path: collection for collection, spec in COLLECTIONS.items()}

    def seed(self, collection: Collection, records: list[dict]) -> None:
        self.data[collection] = [dict(r) for r in records]

    def find(self, collection: Collection, key: str) -> dict | None:
        key_field = get_spec(collection).key_field
        return next((r for r in self.data[collection] if r.get(key_field) == key), None)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if not self.online:
            raise httpx.ConnectError("ledger service unreachable", request=request)

        segments = request.url.path.strip("/").split("/")
        collection = self._routes.get("/" + "/".join(segments[:2]))
        if collection is None:
            return httpx.Response(404, json={"error": "Not found"})
        body = json.loads(request.content) if request.content else None
        records = self.data[collection]

        if len(segments) == 2:
            if request.method == "GET":
                return httpx.Response(200, json=records)
            record = dict(body)
            if get_spec(collection).key_field == "id":
                record["id"] = f"srv-{next(self._ids)}"
            records.insert(0, record)
            return httpx.Response(201, json=record)

        record = self.find(collection, segments[2])
        if record is None:
            return httpx.Response(404, json={"error": f"Unknown {collection} {segments[2]}"})

        if request.method == "DELETE":
            records.remove(record)
            return httpx.Response(204)

        action = segments[3] if len(segments) > 3 else None
        if action == "stock":
            record["quantity"] = record.get("quantity", 0) + body["delta"]
        elif action == "balance":
            balance = Decimal(str(record.get("balance", "0"))) + Decimal(body["delta"])
            record["balance"] = str(balance)
            record["totalSpent"] = body["totalSpent"]
            record["lastVisit"] = body["lastVisit"]
        elif action is None:
            record.update(body)
        return httpx.Response(200, json=record)


@pytest.fixture
def server():
    return LedgerServer()


@pytest.fixture
def make_engine(server):
    """Factory for engines with their own local database, all talking to one server."""
    engines = []

    def make() -> LedgerEngine:
        db_engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        LedgerBase.metadata.create_all(db_engine)
        session = sessionmaker(bind=db_engine, autoflush=False)()
        gateway = LedgerGateway("http://ledger.test", transport=httpx.MockTransport(server.handle))
        engine = LedgerEngine(db=session, gateway=gateway, backoff_base=0.0, backoff_max=0.0)
        engines.append(engine)
        return engine

    yield make

    for engine in engines:
        engine.db.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()
