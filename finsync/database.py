"""
SQLite database layer for finsync.
One table per entity kind holding a JSON document, the local id and the
identifiers assigned by each remote. All data is stored locally for instant
access; the sync service handles the remote side.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from . import config
from .entities import (
    BOOKKEEPING_FIELDS, KINDS, REMOTE_COLUMNS, REMOTE_FIELDS, Remote, get_kind,
)

log = logging.getLogger("finsync.db")

# ──────────────────────────────────────────────────────────────────
# Schema version: bump this when adding migrations
# ──────────────────────────────────────────────────────────────────
SCHEMA_VERSION = 1

ENTITY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id       TEXT,
    supabase_id     TEXT,
    data            TEXT NOT NULL DEFAULT '{{}}',
    created_at      TEXT DEFAULT '',
    updated_at      TEXT DEFAULT ''
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_{table}_remote
    ON {table}(remote_id) WHERE remote_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_{table}_supabase
    ON {table}(supabase_id) WHERE supabase_id IS NOT NULL;
"""

SCHEMA_SQL = """
-- ─── Key/value settings (queue, last sync time) ─────────────────
CREATE TABLE IF NOT EXISTS app_settings (
    key             TEXT PRIMARY KEY,
    value           TEXT
);

-- ─── Sync Log ──────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sync_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name      TEXT NOT NULL,
    direction       TEXT NOT NULL,
    records_affected INTEGER DEFAULT 0,
    status          TEXT DEFAULT 'success',
    error_message   TEXT DEFAULT '',
    timestamp       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_log_table ON sync_log(table_name);
"""


class Database:
    """SQLite database manager with document-style CRUD per entity kind.

    Thread-safe: all execute/commit operations are protected by an RLock
    so the UI thread and the background sync thread can share one
    connection.
    """

    def __init__(self, db_path: Path = None):
        self.db_path = db_path or config.DB_PATH
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def connect(self):
        """Open the database connection and apply settings."""
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            str(self.db_path),
            timeout=10,
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        log.info(f"Database opened: {self.db_path}")

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                log.info("Database closed")

    def initialize(self):
        """Create tables. Safe to call on every start."""
        with self._lock:
            self._ensure_connected()
            self.conn.executescript(SCHEMA_SQL)
            for kind in KINDS:
                self.conn.executescript(ENTITY_TABLE_SQL.format(table=kind.name))
            self.conn.commit()
        log.info(f"Database schema initialized (v{SCHEMA_VERSION})")

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------
    def _ensure_connected(self):
        """Auto-reconnect if the database connection was lost."""
        if self.conn is None:
            log.warning("Database connection lost, reconnecting...")
            self.connect()

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            self._ensure_connected()
            return self.conn.execute(sql, params)

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        with self._lock:
            self._ensure_connected()
            cursor = self.conn.execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[dict]:
        with self._lock:
            self._ensure_connected()
            cursor = self.conn.execute(sql, params)
            row = cursor.fetchone()
            return dict(row) if row else None

    def commit(self):
        with self._lock:
            self.conn.commit()

    @staticmethod
    def _row_to_record(row: dict) -> dict:
        record = json.loads(row["data"] or "{}")
        record["id"] = row["id"]
        record["remoteId"] = row["remote_id"]
        record["supabaseId"] = row["supabase_id"]
        return record

    @staticmethod
    def _split(doc: dict) -> tuple[dict, Optional[str], Optional[str]]:
        """Separate the JSON body from the columns kept outside it."""
        body = {k: v for k, v in doc.items() if k not in BOOKKEEPING_FIELDS}
        if doc.get("_shadow"):
            body["_shadow"] = True
        return body, doc.get("remoteId") or None, doc.get("supabaseId") or None

    # ------------------------------------------------------------------
    # Entity records
    # ------------------------------------------------------------------
    def insert(self, kind, doc: dict) -> int:
        """Insert a record and return its new local id."""
        table = get_kind(kind).name
        body, remote_id, supabase_id = self._split(doc)
        now = datetime.now().isoformat()
        body.setdefault("createdAt", now)
        with self._lock:
            cursor = self.execute(
                f"INSERT INTO {table} (remote_id, supabase_id, data, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (remote_id, supabase_id, json.dumps(body, default=str), now, now),
            )
            self.commit()
            return cursor.lastrowid

    def insert_shadow(self, kind, remote: str, remote_id: str) -> int:
        """Placeholder for a referenced remote record not yet pulled."""
        local_id = self.insert(kind, {REMOTE_FIELDS[remote]: remote_id, "_shadow": True})
        log.info(f"Created shadow {get_kind(kind).name} #{local_id} for {remote} id {remote_id}")
        return local_id

    def get(self, kind, local_id: int) -> Optional[dict]:
        table = get_kind(kind).name
        row = self.fetchone(f"SELECT * FROM {table} WHERE id = ?", (local_id,))
        return self._row_to_record(row) if row else None

    def get_all(self, kind, include_shadows: bool = True) -> list[dict]:
        table = get_kind(kind).name
        rows = self.fetchall(f"SELECT * FROM {table} ORDER BY id")
        records = [self._row_to_record(r) for r in rows]
        if not include_shadows:
            records = [r for r in records if not r.get("_shadow")]
        return records

    def count(self, kind) -> int:
        table = get_kind(kind).name
        return self.fetchone(f"SELECT COUNT(*) AS n FROM {table}")["n"]

    def update(self, kind, local_id: int, changes: dict) -> Optional[dict]:
        """Shallow-merge changes into a record. Returns the updated record."""
        table = get_kind(kind).name
        with self._lock:
            current = self.get(kind, local_id)
            if current is None:
                return None
            merged = {**current, **changes}
            merged.pop("_shadow", None)
            merged["updatedAt"] = datetime.now().isoformat()
            body, _, _ = self._split(merged)
            self.execute(
                f"UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?",
                (json.dumps(body, default=str), merged["updatedAt"], local_id),
            )
            self.commit()
            return self.get(kind, local_id)

    def delete(self, kind, local_id: int) -> bool:
        table = get_kind(kind).name
        with self._lock:
            cursor = self.execute(f"DELETE FROM {table} WHERE id = ?", (local_id,))
            self.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Remote identifiers
    # ------------------------------------------------------------------
    def set_remote_id(self, kind, local_id: int, remote: str,
                      remote_id: Optional[str]) -> bool:
        table = get_kind(kind).name
        column = REMOTE_COLUMNS[remote]
        with self._lock:
            cursor = self.execute(
                f"UPDATE {table} SET {column} = ? WHERE id = ?",
                (remote_id or None, local_id),
            )
            self.commit()
            return cursor.rowcount > 0

    def find_by_remote_id(self, kind, remote: str, remote_id: str) -> Optional[int]:
        table = get_kind(kind).name
        column = REMOTE_COLUMNS[remote]
        row = self.fetchone(f"SELECT id FROM {table} WHERE {column} = ?", (remote_id,))
        return row["id"] if row else None

    def replace_all(self, kind, remote: str, docs: list[dict]) -> int:
        """Replace a whole collection with pulled documents in one transaction.

        Documents whose remote id is already known keep their local id (and
        the id they hold for the other remote), so references held elsewhere
        stay valid. Readers never see a half-cleared table.
        """
        table = get_kind(kind).name
        column = REMOTE_COLUMNS[remote]
        field = REMOTE_FIELDS[remote]
        other = Remote.SUPABASE if remote == Remote.API else Remote.API
        other_column, other_field = REMOTE_COLUMNS[other], REMOTE_FIELDS[other]

        # Last occurrence wins if the remote sends the same id twice
        by_remote_id = {}
        for doc in docs:
            by_remote_id[doc.get(field) or id(doc)] = doc

        now = datetime.now().isoformat()
        with self._lock:
            self._ensure_connected()
            try:
                existing = {
                    row[column]: row
                    for row in self.conn.execute(
                        f"SELECT id, {column}, {other_column} FROM {table} "
                        f"WHERE {column} IS NOT NULL"
                    ).fetchall()
                }
                self.conn.execute(f"DELETE FROM {table}")
                for doc in by_remote_id.values():
                    body, _, _ = self._split(doc)
                    body.pop("_shadow", None)
                    remote_id = doc.get(field) or None
                    known = existing.get(remote_id)
                    other_id = doc.get(other_field) or (known[other_column] if known else None)
                    self.conn.execute(
                        f"INSERT INTO {table} (id, {column}, {other_column}, data, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (known["id"] if known else None, remote_id, other_id,
                         json.dumps(body, default=str), body.get("createdAt", now), now),
                    )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        return len(by_remote_id)

    def export_all(self) -> dict:
        """Every collection keyed by its export key, shadows excluded."""
        data = {kind.export_key: self.get_all(kind, include_shadows=False) for kind in KINDS}
        data["exportedAt"] = datetime.now().isoformat()
        return data

    # ------------------------------------------------------------------
    # App Settings
    # ------------------------------------------------------------------
    def get_setting(self, key: str, default: str = "") -> str:
        row = self.fetchone("SELECT value FROM app_settings WHERE key = ?", (key,))
        return row["value"] if row else default

    def set_setting(self, key: str, value: str):
        with self._lock:
            self.execute(
                "INSERT OR REPLACE INTO app_settings (key, value) VALUES (?, ?)",
                (key, value)
            )
            self.commit()

    # ------------------------------------------------------------------
    # Sync Log
    # ------------------------------------------------------------------
    def log_sync(self, table_name: str, direction: str, records: int,
                 status: str = "success", error: str = ""):
        with self._lock:
            self.execute(
                """INSERT INTO sync_log (table_name, direction, records_affected,
                   status, error_message, timestamp) VALUES (?, ?, ?, ?, ?, ?)""",
                (table_name, direction, records, status, error, datetime.now().isoformat())
            )
            self.commit()

    def get_last_sync(self, table_name: str = None) -> Optional[str]:
        if table_name:
            row = self.fetchone(
                "SELECT timestamp FROM sync_log WHERE table_name = ? AND status = 'success' "
                "ORDER BY timestamp DESC LIMIT 1",
                (table_name,)
            )
        else:
            row = self.fetchone(
                "SELECT timestamp FROM sync_log WHERE status = 'success' ORDER BY timestamp DESC LIMIT 1"
            )
        return row["timestamp"] if row else None
