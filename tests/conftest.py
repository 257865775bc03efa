import copy
import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from tradelens.app.api.deps import get_current_user_id
from tradelens.app.common.config import reset_config
from tradelens.app.common.db import get_db
from tradelens.app.common.rate_limit import reset_limiters
from tradelens.app.common.supabase_client import reset_supabase
from tradelens.app.payments.paypal import reset_paypal_client

ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SERVICE_ROLE_KEY",
    "CRON_SECRET",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_SECRET",
    "PAYPAL_ENV",
    "PAYPAL_WEBHOOK_ID",
    "CASHFREE_APP_ID",
    "CASHFREE_SECRET_KEY",
    "CASHFREE_ENV",
    "NOWPAYMENTS_API_KEY",
    "NOWPAYMENTS_IPN_SECRET",
    "BREVO_API_KEY",
    "EMAIL_MAX_RETRIES",
    "EMAIL_BATCH_SIZE",
    "EMAIL_WORKER_ENABLED",
    "PAYMENT_RATE_LIMIT",
    "COMMUNITY_RATE_LIMIT",
)


class FakeQuery:
    """Subset of the PostgREST query builder, evaluated against in-memory rows."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self.ordering = []
        self.row_limit = None

    # Operations
    def select(self, *columns):
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def upsert(self, payload, on_conflict="id"):
        self.op, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self):
        self.op = "delete"
        return self

    # Filters
    def _filter(self, column, predicate):
        self.filters.append((column, predicate))
        return self

    def eq(self, column, value):
        return self._filter(column, lambda v: v == value)

    def neq(self, column, value):
        return self._filter(column, lambda v: v != value)

    def lt(self, column, value):
        return self._filter(column, lambda v: v is not None and v < value)

    def lte(self, column, value):
        return self._filter(column, lambda v: v is not None and v <= value)

    def gt(self, column, value):
        return self._filter(column, lambda v: v is not None and v > value)

    def gte(self, column, value):
        return self._filter(column, lambda v: v is not None and v >= value)

    def in_(self, column, values):
        values = list(values)
        return self._filter(column, lambda v: v in values)

    def order(self, column, desc=False):
        self.ordering.append((column, desc))
        return self

    def limit(self, n):
        self.row_limit = n
        return self

    # Execution
    def _matches(self, row):
        return all(predicate(row.get(column)) for column, predicate in self.filters)

    def execute(self):
        rows = self.db.tables.setdefault(self.table, [])
        handler = getattr(self, f"_execute_{self.op}")
        return SimpleNamespace(data=copy.deepcopy(handler(rows)))

    def _execute_select(self, rows):
        result = [r for r in rows if self._matches(r)]
        for column, desc in reversed(self.ordering):
            result.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
        if self.row_limit is not None:
            result = result[: self.row_limit]
        return result

    def _new_row(self, record):
        row = dict(record)
        row.setdefault("id", str(uuid.uuid4()))
        return row

    def _execute_insert(self, rows):
        records = self.payload if isinstance(self.payload, list) else [self.payload]
        inserted = [self._new_row(r) for r in records]
        rows.extend(inserted)
        return inserted

    def _execute_update(self, rows):
        updated = []
        for row in rows:
            if self._matches(row):
                row.update(self.payload)
                updated.append(row)
        return updated

    def _execute_upsert(self, rows):
        keys = [k.strip() for k in self.on_conflict.split(",")]
        records = self.payload if isinstance(self.payload, list) else [self.payload]
        result = []
        for record in records:
            existing = None
            if all(record.get(k) is not None for k in keys):
                existing = next(
                    (r for r in rows if all(r.get(k) == record[k] for k in keys)), None
                )
            if existing is not None:
                existing.update(record)
                result.append(existing)
            else:
                row = self._new_row(record)
                rows.append(row)
                result.append(row)
        return result

    def _execute_delete(self, rows):
        removed = [r for r in rows if self._matches(r)]
        self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
        return removed


class FakeAuth:
    def __init__(self):
        self.tokens = {}

    def get_user(self, token):
        if token not in self.tokens:
            raise ValueError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id=self.tokens[token]))


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.auth = FakeAuth()

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name):
        return self.tables.get(name, [])

    def seed(self, name, *rows):
        for row in rows:
            record = dict(row)
            record.setdefault("id", str(uuid.uuid4()))
            self.tables.setdefault(name, []).append(record)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    reset_limiters()
    reset_paypal_client()
    reset_supabase()
    yield
    reset_config()
    reset_limiters()
    reset_paypal_client()
    reset_supabase()


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def user_id():
    return "user-1"


@pytest.fixture
def client(db, user_id):
    from tradelens.app.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user_id] = lambda: user_id
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def anon_client(db):
    """Client with the real token check against the fake auth."""
    from tradelens.app.main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


class FakeHTTPResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text if text is not None else str(self._payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        return self._payload
