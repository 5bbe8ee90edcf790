"""
Shared fixtures: an in-memory stand-in for the pymongo collections the API
touches, a recording image host, and a TestClient wired to both.
"""
import os
import re
import tempfile

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="catalog-uploads-"))

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
from auth import SESSION_COOKIE, hash_password, issue_session
from rate_limit import TokenBucketLimiter


# ----------------------
# Fake store
# ----------------------

def _bracket(v):
    if v is None:
        return 0
    if isinstance(v, bool):
        return 4
    if isinstance(v, (int, float)):
        return 1
    if isinstance(v, str):
        return 2
    if isinstance(v, ObjectId):
        return 3
    return 5


def sort_key(v):
    return (_bracket(v), v if v is not None else 0)


def _compare(actual, op, expected):
    if op == "$eq":
        return actual == expected
    if op == "$ne":
        return actual != expected
    if op == "$exists":
        return (actual is not None) == bool(expected)
    if actual is None or _bracket(actual) != _bracket(expected):
        return False
    if op == "$gt":
        return actual > expected
    if op == "$gte":
        return actual >= expected
    if op == "$lt":
        return actual < expected
    if op == "$lte":
        return actual <= expected
    raise NotImplementedError(op)


def _eval_expr(expr, doc):
    if isinstance(expr, str) and expr.startswith("$"):
        return doc.get(expr[1:])
    if isinstance(expr, dict):
        (op, arg), = expr.items()
        if op == "$concat":
            parts = [_eval_expr(a, doc) for a in arg]
            return None if any(p is None for p in parts) else "".join(parts)
        if op == "$ifNull":
            value = _eval_expr(arg[0], doc)
            return value if value is not None else _eval_expr(arg[1], doc)
        if op == "$regexMatch":
            flags = re.I if "i" in arg.get("options", "") else 0
            return re.search(arg["regex"], _eval_expr(arg["input"], doc), flags) is not None
        raise NotImplementedError(op)
    return expr


def matches(doc, query):
    for key, cond in query.items():
        if key == "$and":
            if not all(matches(doc, q) for q in cond):
                return False
        elif key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
        elif key == "$expr":
            if not _eval_expr(cond, doc):
                return False
        elif isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            if not all(_compare(doc.get(key), op, v) for op, v in cond.items()):
                return False
        elif doc.get(key) != cond:
            return False
    return True


class Result:
    def __init__(self, inserted_id=None, matched_count=0, deleted_count=0, upserted_id=None):
        self.inserted_id = inserted_id
        self.matched_count = matched_count
        self.deleted_count = deleted_count
        self.upserted_id = upserted_id


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._limit = None

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        # stable multi-key sort, least significant key first
        for field, d in reversed(keys):
            self._docs.sort(key=lambda doc: sort_key(doc.get(field)), reverse=d < 0)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def __iter__(self):
        docs = self._docs if not self._limit else self._docs[:self._limit]
        return iter([dict(d) for d in docs])


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []

    def insert_one(self, doc):
        doc = dict(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return Result(inserted_id=doc["_id"])

    def find(self, query=None, projection=None):
        found = [d for d in self.docs if matches(d, query or {})]
        if projection:
            keep = {k for k, v in projection.items() if v} | {"_id"}
            found = [{k: v for k, v in d.items() if k in keep} for d in found]
        return FakeCursor(found)

    def find_one(self, query=None):
        for d in self.docs:
            if matches(d, query or {}):
                return dict(d)
        return None

    def update_one(self, query, update, upsert=False):
        for d in self.docs:
            if matches(d, query):
                d.update(update.get("$set", {}))
                for k in update.get("$unset", {}):
                    d.pop(k, None)
                return Result(matched_count=1)
        if upsert:
            doc = {k: v for k, v in query.items() if not k.startswith("$")}
            doc.update(update.get("$setOnInsert", {}))
            doc.update(update.get("$set", {}))
            res = self.insert_one(doc)
            return Result(upserted_id=res.inserted_id)
        return Result()

    def delete_one(self, query):
        for i, d in enumerate(self.docs):
            if matches(d, query):
                del self.docs[i]
                return Result(deleted_count=1)
        return Result()

    def count_documents(self, query):
        return sum(1 for d in self.docs if matches(d, query))


class FakeDB:
    name = "catalog-test"

    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def list_collection_names(self):
        return list(self.collections)


class RecordingImageHost:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploaded = []
        self.destroyed = []

    def upload(self, filename, data):
        from images import ImageDescriptor
        public_id = f"vehicles/{ObjectId()}"
        self.uploaded.append((filename, data))
        url = f"https://img.example.com/{public_id}.png"
        return ImageDescriptor(url=url, secure_url=url, public_id=public_id, bytes=len(data), format="png")

    def destroy(self, public_id):
        if self.fail:
            raise RuntimeError("image host unreachable")
        self.destroyed.append(public_id)
        return True


# ----------------------
# Fixtures
# ----------------------

@pytest.fixture
def fake_db(monkeypatch):
    store = FakeDB()
    monkeypatch.setattr(database, "db", store)
    return store


@pytest.fixture
def image_host():
    return RecordingImageHost()


@pytest.fixture
def limiter():
    return TokenBucketLimiter(rate_per_min=6000)


@pytest.fixture
def client(fake_db, image_host, limiter):
    from main import app, get_image_host, get_rate_limiter
    app.dependency_overrides[get_image_host] = lambda: image_host
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_account(fake_db):
    fake_db["admin"].insert_one({"name": "Lester", "password_hash": hash_password("s3cret")})
    return {"name": "Lester", "password": "s3cret"}


@pytest.fixture
def admin_client(client):
    client.cookies.set(SESSION_COOKIE, issue_session("Lester"))
    return client


def make_vehicle(**overrides):
    doc = {
        "brand": "Pegassi",
        "category": "Supercarro",
        "model": "Zentorno",
        "price": 725000,
        "speed_original": 209,
        "stock": True,
        "published": True,
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def seed(fake_db):
    def _seed(*docs):
        return [str(fake_db["vehicle"].insert_one(d).inserted_id) for d in docs]
    return _seed
