"""
supabase_client.py: optional Supabase (PostgreSQL) mirror for finsync.

Rows are keyed on UUID v4, columns are snake_case, and every query is
scoped to the signed-in user. Falls back gracefully if Supabase is not
configured: every operation then returns an "unavailable" result.

Usage:
    store = SupabaseStore(auth)

    result = store.create("clients", record)
    if result.status == StoreResult.CREATED:
        reconciler.record_remote_id("clients", record["id"], Remote.SUPABASE, result.remote_id)
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from supabase import create_client

from . import config
from .entities import BOOKKEEPING_FIELDS, REMOTE_FIELDS, Remote, get_kind, to_snake_case
from .reconciler import IdFormat, is_valid_id

log = logging.getLogger("finsync.supabase")


class StoreError(Exception):
    """Raised when Supabase rejects or fails a write."""
    pass


class ScopeError(StoreError):
    """Raised when a query would be built without a user filter."""
    pass


@dataclass
class StoreResult:
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"

    status: str
    remote_id: Optional[str] = None
    data: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (self.CREATED, self.UPDATED, self.DELETED, self.SKIPPED)


class _UserScope:
    """Query builder for one table that always filters on user_id."""

    def __init__(self, client, table: str, user_id: str):
        if not user_id:
            raise ScopeError(f"Refusing to query {table} without a user id")
        self._client = client
        self.table = table
        self.user_id = user_id

    def select(self, columns: str = "*"):
        return self._client.table(self.table).select(columns).eq("user_id", self.user_id)

    def insert(self, payload: dict):
        return self._client.table(self.table).insert({**payload, "user_id": self.user_id})

    def update(self, row_id: str, payload: dict):
        return (
            self._client.table(self.table)
            .update({**payload, "user_id": self.user_id})
            .eq("id", row_id)
            .eq("user_id", self.user_id)
        )

    def delete(self, row_id: str):
        return (
            self._client.table(self.table)
            .delete()
            .eq("id", row_id)
            .eq("user_id", self.user_id)
        )


class SupabaseStore:
    """Secondary remote store. Inert unless URL and key are both configured."""

    def __init__(self, auth, url: str = None, key: str = None, client=None):
        self.auth = auth
        self.url = config.SUPABASE_URL if url is None else url
        self.key = config.SUPABASE_ANON_KEY if key is None else key
        self._client = client

    # ------------------------------------------------------------------
    # Client / availability
    # ------------------------------------------------------------------
    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.url and self.key)

    def _get_client(self):
        """Return the Supabase client, creating it on first call."""
        if self._client is not None:
            return self._client
        if not self.configured:
            return None
        self._client = create_client(self.url, self.key)
        log.info("Supabase client initialised: %s", self.url)
        return self._client

    def is_available(self) -> bool:
        """Configured and a user is signed in."""
        return self.configured and bool(self.auth.user_id)

    def _scoped(self, kind) -> _UserScope:
        return _UserScope(self._get_client(), get_kind(kind).table, self.auth.user_id)

    # ------------------------------------------------------------------
    # Payload shaping
    # ------------------------------------------------------------------
    def field_allow_list(self, kind) -> tuple:
        return get_kind(kind).allowed_fields

    def prepare_payload(self, kind, record: dict) -> dict:
        """Local record -> Supabase row (snake_case, allow-listed columns only)."""
        kind = get_kind(kind)
        allowed = set(kind.allowed_fields)
        payload = {}
        for key, value in record.items():
            if key in BOOKKEEPING_FIELDS:
                continue
            column = to_snake_case(key)
            if column in allowed:
                payload[column] = value
            else:
                log.debug("Skipping unknown field %s (%s) for %s", key, column, kind.name)
        if self.auth.user_id:
            payload["user_id"] = self.auth.user_id
        return payload

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, kind, record: dict) -> StoreResult:
        if not self.is_available():
            return StoreResult(StoreResult.UNAVAILABLE)
        kind = get_kind(kind)
        payload = self.prepare_payload(kind, record)
        try:
            resp = self._scoped(kind).insert(payload).execute()
        except ScopeError:
            raise
        except Exception as e:
            raise StoreError(f"Insert into {kind.table} failed: {e}") from e

        row = (resp.data or [{}])[0]
        remote_id = row.get("id")
        log.info("Supabase: created %s %s", kind.table, remote_id)
        return StoreResult(StoreResult.CREATED, remote_id=remote_id, data=row)

    def update(self, kind, record: dict) -> StoreResult:
        """Update by the record's stored UUID, or create when it has none."""
        if not self.is_available():
            return StoreResult(StoreResult.UNAVAILABLE)
        kind = get_kind(kind)
        row_id = record.get(REMOTE_FIELDS[Remote.SUPABASE])
        if not is_valid_id(row_id, IdFormat.UUID4):
            log.info("No valid Supabase id for %s #%s, creating instead of updating",
                     kind.name, record.get("id"))
            return self.create(kind, record)

        payload = self.prepare_payload(kind, record)
        try:
            resp = self._scoped(kind).update(row_id, payload).execute()
        except ScopeError:
            raise
        except Exception as e:
            raise StoreError(f"Update of {kind.table} {row_id} failed: {e}") from e

        if not resp.data:
            return StoreResult(StoreResult.NOT_FOUND, remote_id=row_id)
        return StoreResult(StoreResult.UPDATED, remote_id=row_id, data=resp.data[0])

    def delete(self, kind, record: dict) -> StoreResult:
        """Delete by stored UUID. Records never synced are skipped."""
        if not self.is_available():
            return StoreResult(StoreResult.UNAVAILABLE)
        kind = get_kind(kind)
        row_id = record.get(REMOTE_FIELDS[Remote.SUPABASE])
        if not is_valid_id(row_id, IdFormat.UUID4):
            log.info("No valid Supabase id for %s #%s, skipping delete",
                     kind.name, record.get("id"))
            return StoreResult(StoreResult.SKIPPED)

        try:
            self._scoped(kind).delete(row_id).execute()
        except ScopeError:
            raise
        except Exception as e:
            raise StoreError(f"Delete from {kind.table} {row_id} failed: {e}") from e
        return StoreResult(StoreResult.DELETED, remote_id=row_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def fetch_all(self, kind) -> list[dict]:
        """All rows of a kind belonging to the current user."""
        if not self.is_available():
            return []
        kind = get_kind(kind)
        try:
            resp = self._scoped(kind).select().execute()
        except ScopeError:
            raise
        except Exception as e:
            raise StoreError(f"Fetch of {kind.table} failed: {e}") from e
        return resp.data or []
