"""
Shared fixtures: an in-memory stand-in for the Motor database and the
workflow services wired over it.
"""
import copy
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from services.batch import BulkOperationCoordinator, GroupCoordinator, FanoutLinker
from services.record_store import WorkflowRecordStore
from services.workflow_engine import WorkflowEngine
from services.workflow_models import RecordStatus, RecordType, Stage, WorkflowDefinition, WorkflowRole
from services.workflow_registry import WorkflowRegistry


# ===========================================================
# MOCK MOTOR COLLECTIONS
# ===========================================================

_MISSING = object()


def _matches_condition(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$in":
                if value is _MISSING or value not in operand:
                    return False
            elif op == "$nin":
                if value is not _MISSING and value in operand:
                    return False
            elif op == "$ne":
                if (None if value is _MISSING else value) == operand:
                    return False
            elif op == "$exists":
                if (value is not _MISSING) != bool(operand):
                    return False
            else:
                raise NotImplementedError(op)
        return True
    if condition is None:
        return value is _MISSING or value is None
    return value is not _MISSING and value == condition


def _matches(doc, query):
    return all(_matches_condition(doc.get(k, _MISSING), v) for k, v in (query or {}).items())


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    doc.pop("_id", None)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if k != "_id" and v]
    if not included:
        return doc
    return {k: doc[k] for k in included if k in doc}


def _apply_update(doc, update):
    for key, value in update.get("$set", {}).items():
        doc[key] = copy.deepcopy(value)
    for key in update.get("$unset", {}):
        doc.pop(key, None)
    for key, value in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + value
    for key, value in update.get("$push", {}).items():
        doc.setdefault(key, []).append(copy.deepcopy(value))


class MockUpdateResult:
    def __init__(self, matched, modified, upserted_id=None):
        self.matched_count = matched
        self.modified_count = modified
        self.upserted_id = upserted_id


class MockInsertResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class MockAsyncCursor:
    """Mock async cursor supporting sort/skip/limit/to_list."""

    def __init__(self, docs, projection):
        self._docs = docs
        self._projection = projection
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field_name, field_dir in reversed(keys):
            self._docs.sort(key=lambda d: (d.get(field_name) is None, d.get(field_name)), reverse=field_dir < 0)
        return self

    def skip(self, count):
        self._skip = count
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _results(self):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [_project(d, self._projection) for d in docs]

    async def to_list(self, length=None):
        results = self._results()
        return results[:length] if length else results

    def __aiter__(self):
        self._iter = iter(self._results())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class MockAsyncCollection:
    """Mock MongoDB async collection for testing."""

    def __init__(self, name):
        self.name = name
        self.documents = []
        self.indexes = []
        self.fail_inserts = False

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return str(keys)

    async def insert_one(self, doc):
        if self.fail_inserts:
            raise RuntimeError(f"insert into {self.name} failed")
        self.documents.append(copy.deepcopy(doc))
        return MockInsertResult(doc.get("id"))

    async def find_one(self, query=None, projection=None):
        for doc in self.documents:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return MockAsyncCursor([d for d in self.documents if _matches(d, query)], projection)

    async def count_documents(self, query=None):
        return len([d for d in self.documents if _matches(d, query)])

    async def update_one(self, query, update, upsert=False):
        for doc in self.documents:
            if _matches(doc, query):
                _apply_update(doc, update)
                return MockUpdateResult(1, 1)
        if upsert:
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            _apply_update(doc, update)
            self.documents.append(doc)
            return MockUpdateResult(0, 0, upserted_id=doc.get("id"))
        return MockUpdateResult(0, 0)

    async def update_many(self, query, update):
        matched = [d for d in self.documents if _matches(d, query)]
        for doc in matched:
            _apply_update(doc, update)
        return MockUpdateResult(len(matched), len(matched))

    async def find_one_and_update(self, query, update, projection=None, return_document=False):
        for doc in self.documents:
            if _matches(doc, query):
                before = _project(doc, projection)
                _apply_update(doc, update)
                return _project(doc, projection) if return_document else before
        return None


class MockAsyncDatabase:
    """Attribute access creates collections on demand, like Motor."""

    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = MockAsyncCollection(name)
        return self._collections[name]


# ===========================================================
# FIXTURES
# ===========================================================

TENANT = "tenant-a"


def build_two_stage_definition(tenant_id=TENANT, **overrides):
    """SITE (SITE_ADMIN) then COMPANY (COMPANY_ADMIN, terminal)."""
    data = dict(
        tenant_id=tenant_id,
        record_type=RecordType.ORDER,
        name="Two-level order approval",
        stages=[
            Stage(stage_key="SITE", stage_name="Site Admin Approval",
                  allowed_roles=[WorkflowRole.SITE_ADMIN], order=1),
            Stage(stage_key="COMPANY", stage_name="Company Admin Approval",
                  allowed_roles=[WorkflowRole.COMPANY_ADMIN], order=2, is_terminal=True),
        ],
        status_on_submission=RecordStatus.PENDING_SITE_ADMIN_APPROVAL,
        status_on_approval={
            "SITE": RecordStatus.PENDING_COMPANY_ADMIN_APPROVAL,
            "COMPANY": RecordStatus.COMPANY_ADMIN_APPROVED,
        },
    )
    data.update(overrides)
    return WorkflowDefinition(**data)


@pytest.fixture
def mock_db():
    return MockAsyncDatabase()


@pytest.fixture
def registry(mock_db):
    return WorkflowRegistry(mock_db)


@pytest.fixture
def records(mock_db):
    return WorkflowRecordStore(mock_db)


@pytest.fixture
def engine(registry, records):
    return WorkflowEngine(registry, records)


@pytest.fixture
def bulk(engine):
    return BulkOperationCoordinator(engine, max_concurrency=3)


@pytest.fixture
def groups(records, bulk):
    return GroupCoordinator(records, bulk)


@pytest.fixture
def fanout(mock_db, records):
    return FanoutLinker(mock_db, records)


@pytest.fixture
def two_stage_definition():
    return build_two_stage_definition()


@pytest.fixture
def definition_factory():
    return build_two_stage_definition
