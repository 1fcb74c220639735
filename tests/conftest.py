"""
Shared fixtures: an in-memory stand-in for the Motor client.

`FakeMotorClient` implements the slice of the Motor API the package calls (ping, default
database, collections with CRUD, atomic find-and-modify, indexes, capped collection creation).
Databases are kept in a class-level store keyed by name, so a second client on the same URI sees
the same data, as it would against a real server.
"""

import copy
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import patch
from urllib.parse import urlparse

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import CollectionInvalid, DuplicateKeyError

from tenant_mongodb.security import account_security

TEST_DB_URL = "mongodb://localhost:27017/tenant_test"


def _matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and any(key.startswith("$") for key in condition):
        for operator, operand in condition.items():
            if operator == "$gte" and not (value is not None and value >= operand):
                return False
            if operator == "$gt" and not (value is not None and value > operand):
                return False
            if operator == "$lte" and not (value is not None and value <= operand):
                return False
            if operator == "$lt" and not (value is not None and value < operand):
                return False
            if operator == "$ne" and value == operand:
                return False
            if operator == "$in" and value not in operand:
                return False
            if operator == "$exists" and (value is not None) != bool(operand):
                return False
        return True
    return value == condition


def matches(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    return all(_matches_condition(document.get(key), condition) for key, condition in (query or {}).items())


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self._documents = documents

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._documents if length is None else self._documents[:length]


class FakeCollection:
    def __init__(self, name: str, options: Optional[Dict[str, Any]] = None):
        self.name = name
        self.options = options or {}
        self.documents: List[Dict[str, Any]] = []
        self.indexes: Dict[str, Dict[str, Any]] = {"_id_": {"key": [("_id", 1)], "v": 2}}

    def _check_unique(self, candidate: Dict[str, Any], ignore_id: Any = None) -> None:
        for name, info in self.indexes.items():
            if not info.get("unique"):
                continue
            fields = [field_name for field_name, _ in info["key"]]
            insensitive = (info.get("collation") or {}).get("strength") in (1, 2)

            def key_of(document):
                values = tuple(document.get(field_name) for field_name in fields)
                if insensitive:
                    values = tuple(v.lower() if isinstance(v, str) else v for v in values)
                return values

            for existing in self.documents:
                if existing["_id"] != ignore_id and key_of(existing) == key_of(candidate):
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {name}")

    async def insert_one(self, document: Dict[str, Any]):
        document.setdefault("_id", ObjectId())
        stored = copy.deepcopy(document)
        self._check_unique(stored)
        self.documents.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"], acknowledged=True)

    def find(self, query: Optional[Dict[str, Any]] = None, projection: Optional[Dict[str, Any]] = None) -> FakeCursor:
        found = [copy.deepcopy(d) for d in self.documents if matches(d, query)]
        if projection:
            included = {key for key, flag in projection.items() if flag}
            found = [{k: v for k, v in d.items() if k in included or k == "_id"} for d in found]
        return FakeCursor(found)

    async def find_one(self, query: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        for document in self.documents:
            if matches(document, query):
                return copy.deepcopy(document)
        return None

    async def find_one_and_update(self, query, update, return_document=ReturnDocument.BEFORE):
        for index, document in enumerate(self.documents):
            if not matches(document, query):
                continue
            before = copy.deepcopy(document)
            after = copy.deepcopy(document)
            for key, value in update.get("$set", {}).items():
                after[key] = copy.deepcopy(value)
            for key in update.get("$unset", {}):
                after.pop(key, None)
            for key, amount in update.get("$inc", {}).items():
                after[key] = after.get(key, 0) + amount
            self._check_unique(after, ignore_id=document["_id"])
            self.documents[index] = after
            return copy.deepcopy(after) if return_document == ReturnDocument.AFTER else before
        return None

    async def find_one_and_delete(self, query):
        for index, document in enumerate(self.documents):
            if matches(document, query):
                return self.documents.pop(index)
        return None

    async def count_documents(self, query: Optional[Dict[str, Any]] = None) -> int:
        return sum(1 for d in self.documents if matches(d, query))

    async def create_index(self, keys, name=None, **options) -> str:
        keys = [(keys, 1)] if isinstance(keys, str) else list(keys)
        name = name or "_".join(f"{field_name}_{direction}" for field_name, direction in keys)
        self.indexes[name] = {"key": keys, "v": 2, **options}
        return name

    async def index_information(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self.indexes)


class FakeDatabase:
    def __init__(self, name: str):
        self.name = name
        self.collections: Dict[str, FakeCollection] = {}
        self.created: List[str] = []

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    get_collection = __getitem__

    async def list_collection_names(self, filter: Optional[Dict[str, Any]] = None) -> List[str]:
        return [name for name in self.collections if matches({"name": name}, filter)]

    async def create_collection(self, name: str, **options) -> FakeCollection:
        if name in self.collections:
            raise CollectionInvalid(f"collection {name} already exists")
        self.collections[name] = FakeCollection(name, options)
        self.created.append(name)
        return self.collections[name]

    async def drop_collection(self, name: str) -> None:
        self.collections.pop(name, None)


class FakeAdmin:
    def __init__(self, client: "FakeMotorClient"):
        self.client = client
        self.commands: List[str] = []

    async def command(self, name: str):
        self.commands.append(name)
        if FakeMotorClient.ping_error is not None:
            raise FakeMotorClient.ping_error
        return {"ok": 1.0}


class FakeMotorClient:
    """Records every instance; configure failures through the class attributes."""

    databases: Dict[str, FakeDatabase] = {}
    instances: List["FakeMotorClient"] = []
    ping_error: Optional[Exception] = None
    init_error: Optional[Exception] = None

    def __init__(self, url: str, **kwargs):
        if FakeMotorClient.init_error is not None:
            raise FakeMotorClient.init_error
        self.url = url
        self.kwargs = kwargs
        self.closed = False
        self.admin = FakeAdmin(self)
        FakeMotorClient.instances.append(self)

    def get_default_database(self, default: Optional[str] = None) -> FakeDatabase:
        name = urlparse(self.url).path.lstrip("/") or default
        if name not in FakeMotorClient.databases:
            FakeMotorClient.databases[name] = FakeDatabase(name)
        return FakeMotorClient.databases[name]

    def close(self) -> None:
        self.closed = True

    @classmethod
    def reset(cls) -> None:
        cls.databases = {}
        cls.instances = []
        cls.ping_error = None
        cls.init_error = None


@pytest.fixture(autouse=True)
def fake_motor():
    """Route every Motor client the package creates to the in-memory double."""
    FakeMotorClient.reset()
    with patch("tenant_mongodb.database.manager.AsyncIOMotorClient", FakeMotorClient), patch(
        "tenant_mongodb.database.log_sink.AsyncIOMotorClient", FakeMotorClient
    ):
        yield FakeMotorClient
    FakeMotorClient.reset()


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    """Use the minimum bcrypt cost so hashing tests stay fast."""
    monkeypatch.setattr(account_security, "SALT_ROUNDS", 4)


@pytest.fixture
def tenant_config():
    from tenant_mongodb.config import TenantConfig

    return TenantConfig(tenant_id="acme", db_url=TEST_DB_URL)


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


@pytest.fixture
def clock():
    from datetime import datetime, timezone

    return FrozenClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))
