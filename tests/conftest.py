"""Shared fixtures: an in-memory store and a scripted HubSpot client."""

from datetime import datetime, timezone
from typing import Dict, List

import pytest

from etl.lib.config import PipelineConfig
from etl.lib.errors import APIError
from etl.lib.stages import StageMap
from etl.lib.supabase_client import UpsertResult
from etl.lib.utils import parse_timestamp


def _comparable(value):
    ts = parse_timestamp(value) if isinstance(value, str) and "-" in value else None
    return ts if ts is not None else value


class FakeStore:
    """TableStore stand-in keeping rows in dicts, honouring conflict keys."""

    def __init__(self, tables: Dict[str, List[dict]] = None, fail_tables=()):
        self.tables = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.fail_tables = set(fail_tables)
        self.upsert_calls = []

    def upsert(self, table, rows, on_conflict, ignore_duplicates=False):
        self.upsert_calls.append((table, len(rows), on_conflict, ignore_duplicates))
        result = UpsertResult(table=table, attempted=len(rows))
        if not rows:
            return result
        if table in self.fail_tables:
            result.failed_batches.append(f"{table} batch 0: connection reset")
            return result

        keys = on_conflict.split(",")
        existing = self.tables.setdefault(table, [])
        for row in rows:
            key = tuple(row.get(k) for k in keys)
            match = next((i for i, r in enumerate(existing)
                          if tuple(r.get(k) for k in keys) == key), None)
            if match is None:
                existing.append(dict(row))
            elif not ignore_duplicates:
                existing[match] = {**existing[match], **row}
            result.written += 1
        return result

    def select(self, table, columns="*", filters=(), order_by=None, desc=False, limit=None):
        rows = [dict(r) for r in self.tables.get(table, [])]
        for op, column, value in filters:
            if op == "gte":
                bound = _comparable(value)
                rows = [r for r in rows
                        if r.get(column) is not None and _comparable(r[column]) >= bound]
            elif op == "in_":
                wanted = {str(v) for v in value}
                rows = [r for r in rows if str(r.get(column)) in wanted]
            elif op == "eq":
                rows = [r for r in rows if r.get(column) == value]
        if order_by:
            rows.sort(key=lambda r: str(r.get(order_by) or ""), reverse=desc)
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            wanted_cols = [c.strip() for c in columns.split(",")]
            rows = [{c: r.get(c) for c in wanted_cols} for r in rows]
        return rows

    def select_since(self, table, column, since, columns="*"):
        return self.select(table, columns, filters=[("gte", column, since.isoformat())],
                           order_by=column)

    def select_in(self, table, column, values, columns="*"):
        return self.select(table, columns, filters=[("in_", column, list(values))])

    def latest(self, table, order_by):
        rows = self.select(table, order_by=order_by, desc=True, limit=1)
        return rows[0] if rows else None


class FakeHubSpot:
    """
    Scripted CRM client. `fail` holds call keys that raise APIError:
    "owners", "forms", "pipelines", ("search", object_type),
    ("associations", from_type), ("batch_read", object_type), ("form", guid).
    """

    def __init__(self, search_pages=None, objects=None, associations=None,
                 owners=None, pipelines=None, forms=None, submissions=None, fail=()):
        self.pages = search_pages or {}
        self.objects = objects or {}
        self.assoc = associations or {}
        self.owners = owners or []
        self.pipelines = pipelines or []
        self.forms = forms or []
        self.submissions = submissions or {}
        self.fail = set(fail)
        self.calls = []

    def _check(self, key):
        self.calls.append(key)
        if key in self.fail:
            raise APIError(f"scripted failure for {key}", status_code=500)

    def search_pages(self, object_type, filters, properties, sorts=None):
        for page in self.pages.get(object_type, []):
            self._check(("search", object_type))
            yield page

    def batch_read(self, object_type, ids, properties):
        self._check(("batch_read", object_type))
        records = self.objects.get(object_type, {})
        return [records[i] for i in ids if i in records]

    def associations(self, from_type, to_type, ids):
        self._check(("associations", from_type))
        mapping = self.assoc.get((from_type, to_type), {})
        return {i: list(mapping[i]) for i in ids if i in mapping}

    def fetch_owners(self):
        self._check("owners")
        return list(self.owners)

    def fetch_pipelines(self, object_type="leads"):
        self._check("pipelines")
        return list(self.pipelines)

    def fetch_forms(self):
        self._check("forms")
        return list(self.forms)

    def form_submission_pages(self, form_guid):
        self._check(("form", form_guid))
        for page in self.submissions.get(form_guid, []):
            yield page


def ms(dt: datetime) -> int:
    """Epoch milliseconds, as HubSpot reports timestamps."""
    return int(dt.timestamp() * 1000)


@pytest.fixture
def now():
    return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    return PipelineConfig(hubspot_token="test-token", supabase_url="https://x.supabase.co",
                          supabase_key="service-key")


@pytest.fixture
def stage_map():
    return StageMap.default()


@pytest.fixture
def store():
    return FakeStore()
