import asyncio
import copy
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any

import pytest
import pytest_asyncio
from bson import ObjectId
from pymongo.errors import AutoReconnect, DuplicateKeyError

from schema_compat.core.config import settings
from schema_compat.core.queries import ID_TYPE_ORDER, bson_type_of
from schema_compat.entities.base import SchemaVersion
from schema_compat.migrations.models import MigrationPhase, VerificationResult
from schema_compat.migrations.registry import MigrationRegistry

MISSING = object()


# =============================================================================
# In-memory MongoDB stand-in
# =============================================================================


def _resolve(value: Any, parts: list[str]) -> list[Any]:
    """Every value reachable through a dotted path, descending into arrays."""
    if not parts:
        return [value]
    head, rest = parts[0], parts[1:]
    if isinstance(value, dict):
        return _resolve(value[head], rest) if head in value else []
    if isinstance(value, list):
        if head.isdigit():
            index = int(head)
            return _resolve(value[index], rest) if index < len(value) else []
        found = []
        for item in value:
            if isinstance(item, dict):
                found.extend(_resolve(item, parts))
        return found
    return []


def _candidates(values: list[Any]) -> list[Any]:
    expanded = []
    for value in values:
        expanded.append(value)
        if isinstance(value, list):
            expanded.extend(value)
    return expanded


def _equals(values: list[Any], expected: Any) -> bool:
    if expected is None and not values:
        return True
    return any(candidate == expected for candidate in _candidates(values))


def _compare(values: list[Any], bound: Any, check) -> bool:
    """Range comparison; like MongoDB, only values of the bound's BSON type can match."""
    for candidate in _candidates(values):
        if candidate is None or bson_type_of(candidate) != bson_type_of(bound):
            continue
        try:
            if check(candidate):
                return True
        except TypeError:
            continue
    return False


def _match_condition(values: list[Any], condition: Any) -> bool:
    if not (isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition)):
        return _equals(values, condition)

    for op, arg in condition.items():
        if op == "$exists":
            ok = bool(values) == bool(arg)
        elif op == "$ne":
            ok = not _equals(values, arg)
        elif op == "$in":
            ok = any(_equals(values, item) for item in arg)
        elif op == "$nin":
            ok = not any(_equals(values, item) for item in arg)
        elif op == "$gt":
            ok = _compare(values, arg, lambda c: c > arg)
        elif op == "$gte":
            ok = _compare(values, arg, lambda c: c >= arg)
        elif op == "$lt":
            ok = _compare(values, arg, lambda c: c < arg)
        elif op == "$lte":
            ok = _compare(values, arg, lambda c: c <= arg)
        elif op == "$type":
            wanted = arg if isinstance(arg, list) else [arg]
            ok = any(bson_type_of(c) in wanted for c in _candidates(values))
        else:
            raise NotImplementedError(op)
        if not ok:
            return False
    return True


def matches(document: Any, query: dict) -> bool:
    if not isinstance(document, dict):
        return False
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(document, clause) for clause in condition):
                return False
        elif key == "$and":
            if not all(matches(document, clause) for clause in condition):
                return False
        elif not _match_condition(_resolve(document, key.split(".")), condition):
            return False
    return True


def _get(document: dict, path: str) -> Any:
    values = _resolve(document, path.split("."))
    return values[0] if values else None


def _set(document: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _unset(document: dict, path: str) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def apply_update(document: dict, update: dict, inserting: bool = False) -> None:
    for op, fields in update.items():
        for path, value in fields.items():
            if op == "$set":
                _set(document, path, copy.deepcopy(value))
            elif op == "$setOnInsert":
                if inserting:
                    _set(document, path, copy.deepcopy(value))
            elif op == "$unset":
                _unset(document, path)
            elif op == "$inc":
                _set(document, path, (_get(document, path) or 0) + value)
            elif op == "$push":
                pushed = _get(document, path) or []
                if isinstance(value, dict) and "$each" in value:
                    pushed = pushed + copy.deepcopy(value["$each"])
                    if "$slice" in value:
                        pushed = pushed[value["$slice"]:] if value["$slice"] < 0 else pushed[: value["$slice"]]
                else:
                    pushed = pushed + [copy.deepcopy(value)]
                _set(document, path, pushed)
            elif op == "$pull":
                current = _get(document, path) or []
                if isinstance(value, dict):
                    kept = [item for item in current if not matches(item, value)]
                else:
                    kept = [item for item in current if item != value]
                _set(document, path, kept)
            else:
                raise NotImplementedError(op)


def _sort_key(value: Any) -> tuple:
    """BSON sort order: null first, then by type bracket, then by value."""
    if value is None:
        return (-1, 0)
    kind = bson_type_of(value)
    return (ID_TYPE_ORDER.index(kind) if kind in ID_TYPE_ORDER else len(ID_TYPE_ORDER), value)


def _sort_documents(documents: list[dict], keys: list[tuple[str, int]]) -> list[dict]:
    ordered = list(documents)
    for path, direction in reversed(keys):
        ordered.sort(
            key=lambda d: _sort_key(_get(d, path)),
            reverse=direction < 0,
        )
    return ordered


class FakeCursor:
    def __init__(self, collection: "FakeCollection", query: dict):
        self._collection = collection
        self._query = query
        self._sort: list[tuple[str, int]] = []
        self._limit = 0
        self._buffer: list[dict] | None = None

    def sort(self, key, direction=None):
        if isinstance(key, list):
            self._sort = [(k, d) for k, d in key]
        else:
            self._sort = [(key, direction if direction is not None else 1)]
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    async def _results(self) -> list[dict]:
        await self._collection._operation("find")
        found = [d for d in self._collection.documents.values() if matches(d, self._query)]
        if self._sort:
            found = _sort_documents(found, self._sort)
        if self._limit:
            found = found[: self._limit]
        return [copy.deepcopy(d) for d in found]

    async def to_list(self, length=None):
        documents = await self._results()
        return documents[:length] if length else documents

    async def explain(self):
        await self._collection._operation("explain")
        return copy.deepcopy(self._collection.explain_result)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._buffer is None:
            self._buffer = await self._results()
        if not self._buffer:
            raise StopAsyncIteration
        return self._buffer.pop(0)


class FakeIndexCursor:
    def __init__(self, indexes: list[dict]):
        self._indexes = list(indexes)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._indexes:
            raise StopAsyncIteration
        return self._indexes.pop(0)


class FakeCollection:
    """Just enough of an AsyncIOMotorCollection for the migration layer."""

    def __init__(self, name: str):
        self.name = name
        self.documents: dict[Any, dict] = {}
        self.indexes: list[dict] = [{"name": "_id_", "key": {"_id": 1}}]
        self.explain_result = {
            "queryPlanner": {"winningPlan": {"stage": "FETCH", "inputStage": {"stage": "IXSCAN"}}}
        }
        self.calls: dict[str, int] = {}
        self._failures: dict[str, list] = {}

    def fail(self, operation: str, times: int = 1, after: int = 0, error: Exception | None = None) -> None:
        """Make the next ``times`` calls of an operation raise, after ``after`` successful ones."""
        self._failures[operation] = [after, times, error or AutoReconnect("connection reset")]

    async def _operation(self, name: str) -> None:
        await asyncio.sleep(0)
        self.calls[name] = self.calls.get(name, 0) + 1
        failure = self._failures.get(name)
        if failure is None:
            return
        if failure[0] > 0:
            failure[0] -= 1
            return
        if failure[1] > 0:
            failure[1] -= 1
            raise failure[2]

    def _matching(self, query: dict) -> list[dict]:
        if "_id" in query and not isinstance(query["_id"], dict):
            document = self.documents.get(query["_id"])
            return [document] if document is not None and matches(document, query) else []
        return [d for d in self.documents.values() if matches(d, query)]

    def raw(self, document_id: Any) -> dict:
        return self.documents[document_id]

    def seed(self, documents: list[dict]) -> None:
        for document in documents:
            self.documents[document["_id"]] = copy.deepcopy(document)

    def find(self, query: dict | None = None, *args, **kwargs) -> FakeCursor:
        return FakeCursor(self, query or {})

    async def find_one(self, query: dict | None = None, *args, **kwargs):
        await self._operation("find_one")
        found = self._matching(query or {})
        return copy.deepcopy(found[0]) if found else None

    async def count_documents(self, query: dict) -> int:
        await self._operation("count_documents")
        return len(self._matching(query))

    async def insert_one(self, document: dict):
        await self._operation("insert_one")
        if "_id" not in document:
            document["_id"] = ObjectId()
        if document["_id"] in self.documents:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name}")
        self.documents[document["_id"]] = copy.deepcopy(document)
        return SimpleNamespace(inserted_id=document["_id"])

    async def replace_one(self, query: dict, replacement: dict, upsert: bool = False):
        await self._operation("replace_one")
        found = self._matching(query)
        if not found:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        document_id = found[0]["_id"]
        self.documents[document_id] = {**copy.deepcopy(replacement), "_id": document_id}
        return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)

    async def update_one(self, query: dict, update: dict, upsert: bool = False):
        await self._operation("update_one")
        found = self._matching(query)
        if found:
            apply_update(found[0], update)
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

        document = {
            key: copy.deepcopy(value)
            for key, value in query.items()
            if not key.startswith("$") and not isinstance(value, dict)
        }
        apply_update(document, update, inserting=True)
        document.setdefault("_id", ObjectId())
        self.documents[document["_id"]] = document
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=document["_id"])

    async def update_many(self, query: dict, update: dict):
        await self._operation("update_many")
        found = self._matching(query)
        for document in found:
            apply_update(document, update)
        return SimpleNamespace(matched_count=len(found), modified_count=len(found))

    async def delete_one(self, query: dict):
        await self._operation("delete_one")
        found = self._matching(query)
        if found:
            del self.documents[found[0]["_id"]]
        return SimpleNamespace(deleted_count=len(found[:1]))

    async def create_index(self, keys, name: str | None = None, **kwargs) -> str:
        await self._operation("create_index")
        name = name or "_".join(f"{k}_{d}" for k, d in keys)
        if not any(index["name"] == name for index in self.indexes):
            self.indexes.append({"name": name, "key": dict(keys)})
        return name

    async def create_indexes(self, models) -> list[str]:
        names = []
        for model in models:
            spec = model.document
            names.append(await self.create_index(list(spec["key"].items()), name=spec["name"]))
        return names

    def list_indexes(self) -> FakeIndexCursor:
        return FakeIndexCursor(copy.deepcopy(self.indexes))


class FakeDatabase:
    def __init__(self, name: str = "tradeya_test"):
        self.name = name
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def get_collection(self, name: str) -> FakeCollection:
        return self[name]

    async def command(self, name: str):
        return {"ok": 1}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """Retry without sleeping."""
    monkeypatch.setattr(settings, "retry_base_delay", 0.0)
    monkeypatch.setattr(settings, "retry_max_delay", 0.0)
    monkeypatch.setattr(settings, "alert_webhook_url", None)


@pytest.fixture
def db():
    return FakeDatabase()


@pytest_asyncio.fixture
async def registry(db):
    registry = MigrationRegistry(db, ["trades", "conversations"])
    await registry.initialize()
    return registry


def ready_verification() -> VerificationResult:
    return VerificationResult(environment="*", ready=True)


PHASE_PATHS = {
    MigrationPhase.NOT_STARTED: [],
    MigrationPhase.VERIFYING: [MigrationPhase.VERIFYING],
    MigrationPhase.DUAL_SCHEMA: [MigrationPhase.VERIFYING, MigrationPhase.DUAL_SCHEMA],
    MigrationPhase.BACKFILLING: [
        MigrationPhase.VERIFYING,
        MigrationPhase.DUAL_SCHEMA,
        MigrationPhase.BACKFILLING,
    ],
    MigrationPhase.CUTOVER: [
        MigrationPhase.VERIFYING,
        MigrationPhase.DUAL_SCHEMA,
        MigrationPhase.BACKFILLING,
        MigrationPhase.CUTOVER,
    ],
}


@pytest.fixture
def move_to():
    """Walk a registry through the allowed transitions up to a phase."""

    async def _move(registry: MigrationRegistry, phase: MigrationPhase) -> None:
        for step in PHASE_PATHS[phase]:
            if step is MigrationPhase.DUAL_SCHEMA:
                await registry.record_verification(ready_verification())
            await registry.set_phase(step)

    return _move


def make_legacy_trade(index: int = 0, **overrides) -> dict:
    created = datetime(2024, 1, 1) + timedelta(minutes=index)
    document = {
        "_id": ObjectId(),
        "title": f"Trade {index}",
        "description": "Guitar lessons for Python help",
        "status": "active",
        "offeredSkills": ["python", {"name": "Django", "level": "advanced"}],
        "requestedSkills": [{"id": "guitar", "name": "Guitar"}],
        "creatorId": f"user-{index % 7}",
        "participantId": None,
        "createdAt": created,
        "updatedAt": created,
    }
    document.update(overrides)
    return document


def make_new_trade(index: int = 0, **overrides) -> dict:
    created = datetime(2024, 2, 1) + timedelta(minutes=index)
    document = {
        "_id": ObjectId(),
        "title": f"New trade {index}",
        "status": "active",
        "skillsOffered": [{"id": "python", "name": "python", "level": "intermediate"}],
        "skillsWanted": [{"id": "guitar", "name": "Guitar", "level": "beginner"}],
        "participants": {"creator": f"user-{index % 7}", "participant": None},
        "schemaVersion": SchemaVersion.NEW.value,
        "createdAt": created,
        "updatedAt": created,
    }
    document.update(overrides)
    return document


def make_legacy_conversation(index: int = 0, **overrides) -> dict:
    updated = datetime(2024, 1, 1) + timedelta(minutes=index)
    document = {
        "_id": ObjectId(),
        "type": "direct",
        "participants": [
            {"id": "user-1", "name": "Ada", "avatar": "a.png"},
            {"userId": "user-2", "displayName": "Grace", "photoURL": "g.png"},
        ],
        "messageCount": index,
        "createdAt": updated,
        "updatedAt": updated,
    }
    document.update(overrides)
    return document


@pytest.fixture
def legacy_trade():
    return make_legacy_trade


@pytest.fixture
def new_trade():
    return make_new_trade


@pytest.fixture
def legacy_conversation():
    return make_legacy_conversation
