"""
Pytest configuration and shared test helpers for backend tests.

The billing services talk to MongoDB through `database.get_db()`; the
`fake_db` fixture swaps in an in-memory store that understands the subset
of the Motor API the services use (find_one, find/sort/skip/limit,
insert_one, update_one, find_one_and_update, delete_one, count_documents)
including unique indexes. Each operation completes without yielding to the
event loop, so it is atomic like a single MongoDB document write.
"""
import copy
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest
from pymongo.errors import DuplicateKeyError

from database import database
from services.stripe_client import StripeClient

_MISSING = object()


# ============================================================================
# In-memory Mongo
# ============================================================================

def _get(doc: Dict[str, Any], key: str) -> Any:
    value: Any = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches_condition(value: Any, condition: Any) -> bool:
    present = value is not _MISSING
    value = None if value is _MISSING else value
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$in" and value not in arg:
                return False
            if op == "$nin" and value in arg:
                return False
            if op == "$ne" and value == arg:
                return False
            if op == "$gte" and not (value is not None and value >= arg):
                return False
            if op == "$gt" and not (value is not None and value > arg):
                return False
            if op == "$lte" and not (value is not None and value <= arg):
                return False
            if op == "$lt" and not (value is not None and value < arg):
                return False
            if op == "$exists" and present != bool(arg):
                return False
        return True
    return value == condition


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    return all(_matches_condition(_get(doc, k), v) for k, v in (query or {}).items())


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: doc[k] for k in included if k in doc}
    return {k: v for k, v in doc.items() if projection.get(k, 1)}


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any], inserting: bool) -> None:
    for key, value in (update.get("$set") or {}).items():
        doc[key] = copy.deepcopy(value)
    for key, value in (update.get("$inc") or {}).items():
        doc[key] = doc.get(key, 0) + value
    for key in (update.get("$unset") or {}):
        doc.pop(key, None)
    if inserting:
        for key, value in (update.get("$setOnInsert") or {}).items():
            doc.setdefault(key, copy.deepcopy(value))


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key, direction: int = 1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: (d.get(field) is None, d.get(field)), reverse=order < 0)
        return self

    def skip(self, n: int):
        self._docs = self._docs[n:]
        return self

    def limit(self, n: int):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length: Optional[int] = None):
        return list(self._docs if length is None else self._docs[:length])

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name: str, unique: tuple = ()):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique = unique

    def _check_unique(self, candidate: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> None:
        for fields in self.unique:
            values = tuple(candidate.get(f) for f in fields)
            if any(v is None for v in values):
                continue
            for doc in self.docs:
                if doc is ignore:
                    continue
                if tuple(doc.get(f) for f in fields) == values:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {fields}")

    def _first(self, query, sort=None) -> Optional[Dict[str, Any]]:
        found = [d for d in self.docs if matches(d, query)]
        if sort:
            found = FakeCursor(found).sort(sort)._docs
        return found[0] if found else None

    async def create_index(self, *args, **kwargs):
        return "index"

    async def find_one(self, query=None, projection=None, sort=None):
        doc = self._first(query, sort)
        return _project(doc, projection) if doc else None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if matches(d, query)])

    async def count_documents(self, query=None):
        return sum(1 for d in self.docs if matches(d, query))

    async def insert_one(self, doc):
        doc = copy.deepcopy(doc)
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=len(self.docs))

    def _upsert_doc(self, query, update):
        doc = {k: v for k, v in (query or {}).items() if not isinstance(v, dict)}
        _apply_update(doc, update, inserting=True)
        self._check_unique(doc)
        self.docs.append(doc)
        return doc

    async def update_one(self, query, update, upsert=False):
        doc = self._first(query)
        if doc is None:
            if upsert:
                self._upsert_doc(query, update)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=1)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        before = copy.deepcopy(doc)
        candidate = copy.deepcopy(doc)
        _apply_update(candidate, update, inserting=False)
        self._check_unique(candidate, ignore=doc)
        doc.clear()
        doc.update(candidate)
        return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)

    async def find_one_and_update(self, query, update, projection=None, upsert=False, return_document=False, sort=None):
        doc = self._first(query, sort)
        if doc is None:
            if not upsert:
                return None
            doc = self._upsert_doc(query, update)
            return _project(doc, projection) if return_document else None
        before = _project(doc, projection)
        _apply_update(doc, update, inserting=False)
        return _project(doc, projection) if return_document else before

    async def delete_one(self, query):
        doc = self._first(query)
        if doc is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(doc)
        return SimpleNamespace(deleted_count=1)


class FakeDatabase:
    UNIQUE = {
        "profiles": (("account_id",), ("stripe_customer_id",)),
        "subscriptions": (("subscription_id",),),
        "credit_transactions": (("transaction_id",), ("account_id", "type", "reference_id")),
        "stripe_events": (("event_id",),),
        "billing_locks": (("lock_id",),),
        "dispute_events": (("dispute_id",),),
    }

    def __init__(self):
        self._collections: Dict[str, FakeCollection] = {}

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name, self.UNIQUE.get(name, ()))
        return self._collections[name]


# ============================================================================
# Fixtures & builders
# ============================================================================

@pytest.fixture
def fake_db():
    """In-memory database patched in for database.get_db()."""
    db = FakeDatabase()
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def stripe_mock():
    """StripeClient double; every async method is an AsyncMock."""
    mock = MagicMock(spec=StripeClient)
    mock.timeout = 20.0
    mock.max_retries = 2
    mock.backoff_seconds = 0.5
    return mock


# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app)."""
    return TestClient(app)
