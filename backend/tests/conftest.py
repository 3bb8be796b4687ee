"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import paths for the backend package and a small
    in-memory stand-in for the motor collections used by the match store.
"""

from __future__ import annotations

import copy
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]
_REPO_ROOT = _THIS_FILE.parents[2]

for candidate in (str(_BACKEND_DIR), str(_REPO_ROOT)):
    if candidate not in sys.path:
        sys.path.insert(0, candidate)

from pymongo.errors import DuplicateKeyError  # noqa: E402


def _field_matches(actual: Any, expected: Any) -> bool:
    if isinstance(expected, dict) and "$ne" in expected:
        if isinstance(actual, list):
            return expected["$ne"] not in actual
        return actual != expected["$ne"]
    return actual == expected


def _matches(doc: dict[str, Any], query: dict[str, Any]) -> bool:
    return all(_field_matches(doc.get(key), value) for key, value in query.items())


class _FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]):
        self._docs = docs

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    """Equality-filter subset of AsyncIOMotorCollection; every call accepts session=."""

    def __init__(self) -> None:
        self.docs: dict[Any, dict[str, Any]] = {}
        self.calls: list[str] = []

    async def find_one(self, query, projection=None, *, session=None):
        self.calls.append("find_one")
        for doc in self.docs.values():
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None, *, session=None):
        self.calls.append("find")
        return _FakeCursor([copy.deepcopy(d) for d in self.docs.values() if _matches(d, query or {})])

    async def insert_one(self, doc, *, session=None):
        self.calls.append("insert_one")
        if doc["_id"] in self.docs:
            raise DuplicateKeyError(f"E11000 duplicate key _id={doc['_id']}", code=11000)
        self.docs[doc["_id"]] = copy.deepcopy(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def update_one(self, query, update, upsert=False, *, session=None):
        self.calls.append("update_one")
        target = next((d for d in self.docs.values() if _matches(d, query)), None)
        upserted_id = None
        if target is None:
            if not upsert:
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
            target = {key: value for key, value in query.items() if not isinstance(value, dict)}
            self.docs[target["_id"]] = target
            upserted_id = target["_id"]
            for key, value in update.get("$setOnInsert", {}).items():
                target[key] = value
            matched = 0
        else:
            matched = 1
        for key, value in update.get("$set", {}).items():
            target[key] = value
        for key, delta in update.get("$inc", {}).items():
            target[key] = target.get(key, 0) + delta
        for key, value in update.get("$addToSet", {}).items():
            bucket = target.setdefault(key, [])
            if value not in bucket:
                bucket.append(value)
        return SimpleNamespace(matched_count=matched, modified_count=matched, upserted_id=upserted_id)

    async def create_index(self, *_args, **_kwargs):
        return "idx"


class FakeMongoDB(SimpleNamespace):
    def __init__(self) -> None:
        super().__init__(
            matches=FakeCollection(),
            match_statistics=FakeCollection(),
            match_events=FakeCollection(),
        )

    async def command(self, name):
        return {"ok": 1.0}


@pytest.fixture
def fake_db(monkeypatch):
    import matchcast.database as _db

    db = FakeMongoDB()
    monkeypatch.setattr(_db, "db", db, raising=False)
    return db
