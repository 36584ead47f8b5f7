# tests/conftest.py
import threading
import uuid
from types import SimpleNamespace

import pytest

from finsync.api import ValidationError
from finsync.auth import AuthSession
from finsync.database import Database
from finsync.entities import KINDS, get_kind
from finsync.mutation_queue import MutationQueue
from finsync.supabase_client import SupabaseStore
from finsync.sync import SyncService


# --- Fake remotes ---

class FakeAPI:
    """In-memory stand-in for APIClient.

    Documents are stored per kind keyed by remote id. `fail` maps
    (method, kind name) to an exception to raise; `gate` makes every call
    block until set so tests can overlap two syncs.
    """

    def __init__(self):
        self.docs = {kind.name: {} for kind in KINDS}
        self.calls = []
        self.fail = {}
        self.uploads = []
        self.gate = None
        self.entered = threading.Event()
        self._next = 0

    def _check(self, method, kind_name):
        self.calls.append((method, kind_name))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        exc = self.fail.get((method, kind_name))
        if exc is not None:
            raise exc

    def _new_id(self):
        self._next += 1
        return f"r{self._next}"

    def count(self, method, kind_name=None):
        return sum(1 for m, k in self.calls if m == method and (kind_name is None or k == kind_name))

    def fetch_all(self, kind):
        name = get_kind(kind).name
        self._check("fetch_all", name)
        return [dict(doc) for doc in self.docs[name].values()]

    def create(self, kind, payload):
        name = get_kind(kind).name
        self._check("create", name)
        remote_id = self._new_id()
        doc = {**payload, "remoteId": remote_id}
        self.docs[name][remote_id] = doc
        return dict(doc)

    def update(self, kind, remote_id, payload):
        name = get_kind(kind).name
        self._check("update", name)
        if remote_id not in self.docs[name]:
            raise ValidationError("Not found", status=404)
        self.docs[name][remote_id].update(payload)
        return dict(self.docs[name][remote_id])

    def delete(self, kind, remote_id):
        name = get_kind(kind).name
        self._check("delete", name)
        if remote_id not in self.docs[name]:
            raise ValidationError("Not found", status=404)
        del self.docs[name][remote_id]

    def migrate(self, dataset):
        """Mirrors the server: documents get new ids, the response only counts them."""
        self._check("migrate", None)
        self.uploads.append(dataset)

        details = {}
        for kind in KINDS:
            records = dataset.get(kind.export_key, [])
            for record in records:
                remote_id = self._new_id()
                doc = {k: v for k, v in record.items() if k != "id"}
                doc["remoteId"] = remote_id
                self.docs[kind.name][remote_id] = doc
            details[kind.export_key] = {"imported": len(records), "errors": []}
        imported = sum(d["imported"] for d in details.values())
        return {"success": True, "summary": {"imported": imported, "errors": 0}, "details": details}

    def is_online(self):
        return True


class FakeQuery:
    """Chainable query mimicking the postgrest builder."""

    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.op = None
        self.payload = None
        self.filters = []

    def select(self, columns="*"):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def execute(self):
        self.client.executed.append(
            {"table": self.table, "op": self.op, "payload": self.payload, "filters": list(self.filters)}
        )
        if self.client.fail is not None:
            raise self.client.fail

        rows = self.client.rows.setdefault(self.table, {})

        def matches(row):
            return all(row.get(column) == value for column, value in self.filters)

        if self.op == "insert":
            row = dict(self.payload)
            row.setdefault("id", str(uuid.uuid4()))
            rows[row["id"]] = row
            data = [dict(row)]
        elif self.op == "select":
            data = [dict(r) for r in rows.values() if matches(r)]
        elif self.op == "update":
            data = []
            for row in rows.values():
                if matches(row):
                    row.update(self.payload)
                    data.append(dict(row))
        else:
            doomed = [key for key, row in rows.items() if matches(row)]
            data = [rows.pop(key) for key in doomed]
        return SimpleNamespace(data=data)


class FakeSupabaseClient:
    def __init__(self):
        self.rows = {}
        self.executed = []
        self.fail = None

    def table(self, name):
        return FakeQuery(self, name)


# --- Fixtures ---

@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database per test."""
    database = Database(tmp_path / "finsync_test.db")
    database.connect()
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def auth():
    return AuthSession("test-token", "user-1")


@pytest.fixture
def fake_api():
    return FakeAPI()


@pytest.fixture
def supabase_client():
    return FakeSupabaseClient()


@pytest.fixture
def supabase(auth, supabase_client):
    return SupabaseStore(auth, url="https://example.supabase.co", key="anon-key",
                         client=supabase_client)


@pytest.fixture
def service(db, fake_api, auth):
    """SyncService against the REST fake only."""
    return SyncService(db, fake_api, auth, mutation_queue=MutationQueue(db))


@pytest.fixture
def dual_service(db, fake_api, auth, supabase):
    """SyncService with both the REST fake and the Supabase fake."""
    return SyncService(db, fake_api, auth, supabase=supabase, mutation_queue=MutationQueue(db))
