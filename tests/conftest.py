import os

# clients.couchbase validates its settings at import time
os.environ.setdefault("COUCHBASE_USERNAME", "test")
os.environ.setdefault("COUCHBASE_PASSWORD", "test")
os.environ.setdefault("COUCHBASE_HOST", "localhost")
os.environ.setdefault("COUCHBASE_BUCKET", "bidcraft")
os.environ.setdefault("COUCHBASE_PROTOCOL", "couchbase")

import asyncio
import copy
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Tuple

import pytest
from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)

from clients.couchbase import Keyspace
from models.entities.couchbase.listings import Listing, ListingData

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory Couchbase
# ---------------------------------------------------------------------------

class FakeResult:
    def __init__(self, doc: dict, cas: int):
        self._doc = doc
        self.cas = cas

    @property
    def content_as(self):
        return {dict: copy.deepcopy(self._doc)}


class FakeCollection:
    """Key/value store with CAS tokens, mirroring the acouchbase collection calls we use."""

    _cas = itertools.count(1)

    def __init__(self, name: str):
        self.name = name
        self.docs: Dict[str, Tuple[dict, int]] = {}

    async def get(self, key: str) -> FakeResult:
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key}")
        doc, cas = self.docs[key]
        result = FakeResult(copy.deepcopy(doc), cas)
        # Let other tasks run between read and write so CAS races happen
        await asyncio.sleep(0)
        return result

    async def insert(self, key: str, doc: dict, **kwargs) -> FakeResult:
        if key in self.docs:
            raise DocumentExistsException(message=f"{self.name}/{key}")
        return self._store(key, doc)

    async def upsert(self, key: str, doc: dict, **kwargs) -> FakeResult:
        return self._store(key, doc)

    async def replace(self, key: str, doc: dict, cas: int = None, **kwargs) -> FakeResult:
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key}")
        if cas is not None and self.docs[key][1] != cas:
            raise CASMismatchException(message=f"{self.name}/{key}")
        return self._store(key, doc)

    async def remove(self, key: str, **kwargs) -> FakeResult:
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key}")
        doc, cas = self.docs.pop(key)
        return FakeResult(doc, cas)

    def query(self, **params: Any) -> list:
        return [
            {"id": key, self.name: copy.deepcopy(doc)}
            for key, (doc, _) in self.docs.items()
            if all(doc.get(field) == value for field, value in params.items())
        ]

    def _store(self, key: str, doc: dict) -> FakeResult:
        cas = next(self._cas)
        self.docs[key] = (copy.deepcopy(doc), cas)
        return FakeResult(doc, cas)


class FakeCouchbase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def collection(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection(name))


@pytest.fixture(autouse=True)
def fake_db(monkeypatch) -> FakeCouchbase:
    db = FakeCouchbase()

    async def _get_collection(self: Keyspace):
        return db.collection(self.collection_name)

    async def _query(self: Keyspace, query: str, **kwargs):
        return db.collection(self.collection_name).query(**kwargs)

    monkeypatch.setattr(Keyspace, "get_collection", _get_collection)
    monkeypatch.setattr(Keyspace, "query", _query)
    return db


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

def make_listing_data(**overrides) -> ListingData:
    fields = {
        "seller_id": "seller-1",
        "title": "Wood-fired stoneware vase",
        "description": "Hand thrown, ash glazed.",
        "category": "pottery",
        "starting_bid": Decimal("10.00"),
        "bid_increment": Decimal("1.00"),
        "auction_start_date": NOW - timedelta(days=1),
        "auction_end_date": NOW + timedelta(days=1),
    }
    fields.update(overrides)
    return ListingData(**fields)


async def store_listing(key: str = "listing-1", **overrides) -> Listing:
    return await Listing.create_or_update(key, make_listing_data(**overrides))


def clock(at: datetime = NOW):
    return lambda: at


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)
