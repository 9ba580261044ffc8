"""
Shared fixtures.

FakeSupabase mimics the subset of the supabase-py query builder the store
uses (select/insert/update/upsert/delete with eq, in_, lt, ilike, order and
limit), backed by in-memory lists so filters and guarded updates behave like
the real thing.
"""

import copy
import re
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from enrichment.config import Settings


_last_timestamp = [datetime.min.replace(tzinfo=timezone.utc)]


def _next_timestamp() -> str:
    # Strictly increasing so created_at ordering is deterministic
    stamp = max(datetime.now(timezone.utc), _last_timestamp[0] + timedelta(microseconds=1))
    if stamp.microsecond == 0:
        stamp += timedelta(microseconds=1)
    _last_timestamp[0] = stamp
    return stamp.isoformat()


def _like_to_regex(pattern: str):
    escaped = re.escape(pattern).replace("%", ".*").replace("_", ".")
    return re.compile(f"^{escaped}$", re.IGNORECASE)


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.action = "select"
        self.payload: Any = None
        self.columns = "*"
        self.on_conflict = None
        self.filters = []
        self.order_by = None
        self.order_desc = False
        self.limit_count = None

    # Builder methods

    def select(self, columns: str = "*"):
        self.action = "select"
        self.columns = columns
        return self

    def insert(self, payload):
        self.action = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.action = "update"
        self.payload = payload
        return self

    def upsert(self, payload, on_conflict: str = "id"):
        self.action = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        return self

    def delete(self):
        self.action = "delete"
        return self

    def eq(self, field, value):
        self.filters.append(lambda row: row.get(field) == value)
        return self

    def in_(self, field, values):
        values = list(values)
        self.filters.append(lambda row: row.get(field) in values)
        return self

    def lt(self, field, value):
        self.filters.append(lambda row: row.get(field) is not None and row.get(field) < value)
        return self

    def ilike(self, field, pattern):
        regex = _like_to_regex(pattern)
        self.filters.append(lambda row: row.get(field) is not None and bool(regex.match(str(row.get(field)))))
        return self

    def order(self, field, desc: bool = False):
        self.order_by = field
        self.order_desc = desc
        return self

    def limit(self, count):
        self.limit_count = count
        return self

    # Execution

    def _matches(self, row) -> bool:
        return all(f(row) for f in self.filters)

    def _project(self, row: Dict[str, Any]) -> Dict[str, Any]:
        if self.columns.strip() == "*":
            return copy.deepcopy(row)
        fields = [c.strip() for c in self.columns.split(",")]
        return {f: copy.deepcopy(row.get(f)) for f in fields}

    def execute(self):
        self.db.calls.append((self.table_name, self.action))
        failure = self.db.failures.get((self.table_name, self.action))
        if failure:
            raise failure

        rows = self.db.rows(self.table_name)

        if self.action == "select":
            found = [r for r in rows if self._matches(r)]
            if self.order_by:
                found.sort(
                    key=lambda r: (r.get(self.order_by) is None, r.get(self.order_by)),
                    reverse=self.order_desc
                )
            if self.limit_count:
                found = found[:self.limit_count]
            return SimpleNamespace(data=[self._project(r) for r in found])

        if self.action == "insert":
            records = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [self.db.add(self.table_name, r) for r in records]
            return SimpleNamespace(data=copy.deepcopy(inserted))

        if self.action == "update":
            changed = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self.payload))
                    changed.append(copy.deepcopy(row))
            return SimpleNamespace(data=changed)

        if self.action == "upsert":
            keys = [k.strip() for k in self.on_conflict.split(",")]
            written = []
            for record in self.payload:
                existing = next(
                    (r for r in rows if all(r.get(k) == record.get(k) for k in keys)), None
                )
                if existing is not None:
                    existing.update(copy.deepcopy(record))
                    written.append(copy.deepcopy(existing))
                else:
                    written.append(copy.deepcopy(self.db.add(self.table_name, record)))
            return SimpleNamespace(data=written)

        if self.action == "delete":
            removed = [r for r in rows if self._matches(r)]
            self.db.tables[self.table_name] = [r for r in rows if not self._matches(r)]
            return SimpleNamespace(data=removed)

        raise ValueError(f"Unknown action {self.action}")


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.failures: Dict[tuple, Exception] = {}
        self.calls: List[tuple] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(name, [])

    def add(self, name: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = copy.deepcopy(record)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", _next_timestamp())
        row.setdefault("updated_at", row["created_at"])
        self.rows(name).append(row)
        return row

    def seed(self, _table: str, /, **record) -> Dict[str, Any]:
        return copy.deepcopy(self.add(_table, record))

    def find(self, name: str, record_id: str) -> Dict[str, Any]:
        return next(r for r in self.rows(name) if r["id"] == record_id)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def settings():
    return Settings(
        extraction_worker_api_key="worker-secret",
        scrape_delay_seconds=0,
        keyword_delay_seconds=0,
        seller_ids={"country-us": "SELLER123"},
        gemini_api_key=None,
    )


@pytest.fixture
def country(fake_supabase):
    return fake_supabase.seed("lb_countries", id="country-us", name="United States",
                              code="US", amazon_domain="amazon.com")


@pytest.fixture
def auth_headers():
    """Auth headers for protected endpoints."""
    return {"Authorization": "Bearer test-token"}


@pytest.fixture
def worker_headers():
    return {"Authorization": "Bearer worker-secret"}


