"""
Sync service for finsync.
Keeps the local SQLite store in step with the REST API and, when configured,
the Supabase mirror. Local writes land in SQLite first; remote writes are
sent straight away when possible and queued otherwise. Provides offline-first
operation.
"""

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import NamedTuple, Optional

from . import config
from .api import APIClient, APIError, AuthenticationError, ValidationError
from .auth import AuthSession
from .database import Database
from .entities import (
    BOOKKEEPING_FIELDS, KINDS, REMOTE_FIELDS, Remote, get_kind, to_camel_case,
)
from .mutation_queue import DrainResult, MutationQueue, Operation, QueueEntry
from .reconciler import Direction, IdentityConflictError, IdentityReconciler
from .supabase_client import StoreError, StoreResult, SupabaseStore

log = logging.getLogger("finsync.sync")

LAST_SYNC_KEY = "last_sync_time"
REPAIRS_KEY = "pending_fk_repairs"

# Failures that leave a single record unsent without stopping the pass.
# ValueError covers a remote answering a create with a malformed id.
RECORD_ERRORS = (APIError, StoreError, IdentityConflictError, ValueError)

# Fields ignored when matching a migrated record to the server's copy
_VOLATILE_FIELDS = frozenset({"createdAt", "updatedAt"})


class RepairKey(NamedTuple):
    """A record whose references were dropped when it was sent to a remote."""
    kind: str
    local_id: int
    remote: str


def _timestamp(doc: dict) -> datetime:
    """updatedAt (falling back to createdAt) as a naive local datetime."""
    value = doc.get("updatedAt") or doc.get("createdAt")
    if not isinstance(value, str):
        return datetime.min
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _same_content(kind, record: dict, doc: dict) -> bool:
    """True when a server document carries every plain field of a local record.

    Ids, references and timestamps are ignored: the server assigns its own.
    """
    ignored = BOOKKEEPING_FIELDS | _VOLATILE_FIELDS | set(kind.fk_map)
    return all(doc.get(key) == value for key, value in record.items() if key not in ignored)


class SyncEvent:
    """Events emitted by the sync service for the UI to consume."""
    SYNC_STARTED = "sync_started"          # (operation)
    SYNC_PROGRESS = "sync_progress"        # (table_name, count)
    SYNC_COMPLETE = "sync_complete"        # (SyncResult)
    SYNC_ERROR = "sync_error"              # (error_message)
    TABLE_UPDATED = "table_updated"        # (table_name)
    WRITE_SYNCED = "write_synced"          # (kind, operation, local_id, remote)
    WRITE_QUEUED = "write_queued"          # (kind, operation, local_id, remote)
    AUTH_REQUIRED = "auth_required"        # (reason)


class SyncStatus:
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"
    ALREADY_SYNCING = "already_syncing"


@dataclass
class SyncResult:
    status: str
    operation: str = ""
    kinds: dict = field(default_factory=dict)      # kind name -> records affected
    errors: dict = field(default_factory=dict)     # kind name (or step) -> message
    repaired: int = 0
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.SUCCESS, SyncStatus.ALREADY_SYNCING)


@dataclass
class AuditReport:
    """Per kind, local ids whose remotes disagree about whether they exist."""
    api_only: dict = field(default_factory=dict)
    supabase_only: dict = field(default_factory=dict)
    unsynced: dict = field(default_factory=dict)
    remote_orphans: dict = field(default_factory=dict)
    errors: dict = field(default_factory=dict)
    secondary_checked: bool = False

    @property
    def consistent(self) -> bool:
        return not any((self.api_only, self.supabase_only, self.unsynced,
                        self.remote_orphans, self.errors))


class SyncService:
    """
    Offline-first sync service.

    - On startup: reload the mutation queue and replay it if signed in
    - On local change: write SQLite, then push or queue per remote
    - Every N minutes (optional thread): replay the queue, then pull
    - Emits events to a queue that the UI polls
    """

    def __init__(self, db: Database, api: APIClient, auth: AuthSession,
                 supabase: Optional[SupabaseStore] = None,
                 mutation_queue: Optional[MutationQueue] = None):
        self.db = db
        self.api = api
        self.auth = auth
        self.supabase = supabase
        self.mutations = mutation_queue if mutation_queue is not None else MutationQueue(db)
        self.reconciler = IdentityReconciler(db)
        self.event_queue: queue.Queue = queue.Queue()
        self._sync_lock = threading.Lock()
        self._repairs: dict[RepairKey, list] = {}
        self._repairs_lock = threading.Lock()
        self._last_sync_time: Optional[str] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.auth.on_invalidated(lambda reason: self._emit(SyncEvent.AUTH_REQUIRED, reason))

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------
    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def last_sync_time(self) -> Optional[str]:
        return self._last_sync_time

    @property
    def secondary_available(self) -> bool:
        return self.supabase is not None and self.supabase.is_available()

    def status(self) -> dict:
        return {
            "is_syncing": self.is_syncing,
            "last_sync_time": self._last_sync_time,
            "queue_length": self.mutations.length(),
            "dead_letter_count": len(self.mutations.dead_letters()),
            "authenticated": self.auth.is_authenticated,
            "secondary_available": self.secondary_available,
        }

    def get_events(self) -> list[tuple]:
        """Drain the event queue. Called by the UI on a timer."""
        events = []
        while not self.event_queue.empty():
            try:
                events.append(self.event_queue.get_nowait())
            except queue.Empty:
                break
        return events

    def startup(self) -> Optional[DrainResult]:
        """Reload persisted state and replay the queue before returning."""
        self.mutations.load()
        self._last_sync_time = self.db.get_setting(LAST_SYNC_KEY) or None
        self._load_repairs()
        if self.auth.is_authenticated and not self.mutations.is_empty():
            log.info(f"Replaying {self.mutations.length()} queued mutation(s) at startup")
            return self.process_queue()
        return None

    def start(self, interval: int = None):
        """Start the background sync thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, args=(interval or config.SYNC_INTERVAL_SECONDS,),
            daemon=True, name="SyncService",
        )
        self._thread.start()
        log.info("Sync service started")

    def stop(self):
        """Stop the sync thread."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        log.info("Sync service stopped")

    # ------------------------------------------------------------------
    # Local mutations (called by the UI layer)
    # ------------------------------------------------------------------
    def add(self, kind, doc: dict) -> dict:
        """Insert locally, then create on every remote."""
        kind = get_kind(kind)
        local_id = self.db.insert(kind, doc)
        self._propagate(kind, Operation.CREATE, local_id, {})
        return self.db.get(kind, local_id)

    def update(self, kind, local_id: int, changes: dict) -> Optional[dict]:
        kind = get_kind(kind)
        if self.db.update(kind, local_id, changes) is None:
            return None
        self._propagate(kind, Operation.UPDATE, local_id, dict(changes))
        return self.db.get(kind, local_id)

    def remove(self, kind, local_id: int) -> bool:
        kind = get_kind(kind)
        record = self.db.get(kind, local_id)
        if record is None:
            return False
        self.db.delete(kind, local_id)
        self._propagate(kind, Operation.DELETE, local_id, record)
        return True

    def _targets(self) -> list[str]:
        remotes = [Remote.API]
        if self.supabase is not None and self.supabase.configured:
            remotes.append(Remote.SUPABASE)
        return remotes

    def _remote_ready(self, remote: str) -> bool:
        if remote == Remote.API:
            return self.auth.is_authenticated
        return self.secondary_available

    def _propagate(self, kind, operation: str, local_id: int, payload: dict):
        for remote in self._targets():
            entry = QueueEntry(kind=kind.name, operation=operation, local_id=local_id,
                               payload=payload, remote=remote)
            info = (kind.name, operation, local_id, remote)

            # Keep per-record order when earlier writes are still waiting
            if not self._remote_ready(remote) or self.mutations.pending_for(kind, local_id, remote):
                self.mutations.enqueue(kind, operation, local_id, payload, remote=remote)
                self._emit(SyncEvent.WRITE_QUEUED, info)
                continue

            try:
                self.dispatch(entry)
            except AuthenticationError as e:
                log.warning(f"Session expired during {operation} {kind.name} #{local_id}: {e}")
            except RECORD_ERRORS as e:
                log.warning(f"{remote} {operation} failed for {kind.name} #{local_id}, queued: {e}")
            else:
                self._emit(SyncEvent.WRITE_SYNCED, info)
                continue

            self.mutations.enqueue(kind, operation, local_id, payload, remote=remote)
            self._emit(SyncEvent.WRITE_QUEUED, info)

    # ------------------------------------------------------------------
    # Dispatch: create vs update
    # ------------------------------------------------------------------
    def dispatch(self, entry: QueueEntry) -> str:
        """Send one mutation. Returns the action taken.

        The decision is made from the current local record, not from the
        queued operation: without a valid remote id the record is created,
        with one it is updated.
        """
        kind = get_kind(entry.kind)
        remote = entry.remote
        record = self.db.get(kind, entry.local_id)

        if entry.operation == Operation.DELETE:
            source = record if record is not None else entry.payload
            remote_id = self.reconciler.resolve_remote_id(source, remote)
            if remote_id is None:
                log.info(f"{kind.name} #{entry.local_id} was never synced to {remote}, skipping delete")
                return "skipped"
            return self._send_delete(kind, remote, remote_id, source)

        if record is None:
            log.info(f"{kind.name} #{entry.local_id} no longer exists locally, skipping {entry.operation}")
            return "skipped"

        remote_id = self.reconciler.resolve_remote_id(record, remote)
        if remote_id is None:
            return self._send_create(kind, record, remote)
        return self._send_update(kind, record, remote, remote_id)

    @staticmethod
    def _api_body(record: dict) -> dict:
        return {k: v for k, v in record.items() if k not in BOOKKEEPING_FIELDS}

    def _require_secondary(self):
        if not self.secondary_available:
            raise StoreError("Supabase is not available")

    def _send_create(self, kind, record: dict, remote: str) -> str:
        local_id = record["id"]
        payload, dropped = self.reconciler.translate_foreign_keys(kind, record, Direction.PUSH, remote)

        if remote == Remote.API:
            created = self.api.create(kind, self._api_body(payload))
            new_id = created.get("remoteId") if isinstance(created, dict) else None
            if not new_id:
                raise APIError(f"Create of {kind.name} #{local_id} returned no id")
        else:
            self._require_secondary()
            new_id = self.supabase.create(kind, payload).remote_id
            if not new_id:
                raise StoreError(f"Insert of {kind.name} #{local_id} returned no id")

        self.reconciler.record_remote_id(kind, local_id, remote, new_id)
        self._note_repair(kind, local_id, remote, dropped)
        log.info(f"Created {kind.name} #{local_id} on {remote} as {new_id}")
        return Operation.CREATE

    def _send_update(self, kind, record: dict, remote: str, remote_id: str) -> str:
        local_id = record["id"]
        payload, dropped = self.reconciler.translate_foreign_keys(kind, record, Direction.PUSH, remote)

        if remote == Remote.API:
            try:
                self.api.update(kind, remote_id, self._api_body(payload))
            except ValidationError as e:
                if e.status != 404:
                    raise
                return self._recreate(kind, local_id, remote, remote_id)
        else:
            self._require_secondary()
            result = self.supabase.update(kind, payload)
            if result.status == StoreResult.NOT_FOUND:
                return self._recreate(kind, local_id, remote, remote_id)

        self._note_repair(kind, local_id, remote, dropped)
        log.debug(f"Updated {kind.name} #{local_id} on {remote} ({remote_id})")
        return Operation.UPDATE

    def _recreate(self, kind, local_id: int, remote: str, stale_id: str) -> str:
        log.warning(f"{remote} no longer has {kind.name} {stale_id}, creating it again")
        self.reconciler.forget_remote_id(kind, local_id, remote)
        return self._send_create(kind, self.db.get(kind, local_id), remote)

    def _send_delete(self, kind, remote: str, remote_id: str, source: dict) -> str:
        if remote == Remote.API:
            try:
                self.api.delete(kind, remote_id)
            except ValidationError as e:
                if e.status != 404:
                    raise
                log.info(f"{kind.name} {remote_id} already gone from {remote}")
        else:
            self._require_secondary()
            self.supabase.delete(kind, source)
        self._note_repair(kind, source.get("id"), remote, [])
        log.info(f"Deleted {kind.name} {remote_id} on {remote}")
        return Operation.DELETE

    # ------------------------------------------------------------------
    # Foreign-key repairs
    # ------------------------------------------------------------------
    def _note_repair(self, kind, local_id: int, remote: str, dropped: list):
        key = RepairKey(kind.name, local_id, remote)
        with self._repairs_lock:
            if dropped:
                self._repairs[key] = list(dropped)
            elif self._repairs.pop(key, None) is None:
                return
            self._save_repairs()

    def _save_repairs(self):
        """Persist the repair list. Caller holds _repairs_lock."""
        rows = [{**key._asdict(), "fields": fields} for key, fields in self._repairs.items()]
        self.db.set_setting(REPAIRS_KEY, json.dumps(rows))

    def _load_repairs(self):
        try:
            rows = json.loads(self.db.get_setting(REPAIRS_KEY, "[]") or "[]")
        except ValueError as e:
            log.error(f"Stored reference repairs are not valid JSON, ignoring: {e}")
            rows = []
        repairs = {}
        for row in rows:
            try:
                key = RepairKey(row["kind"], row["local_id"], row["remote"])
                repairs[key] = list(row["fields"])
            except (KeyError, TypeError) as e:
                log.warning(f"Skipping malformed reference repair {row!r}: {e}")
        with self._repairs_lock:
            self._repairs = repairs

    def pending_repairs(self) -> dict:
        with self._repairs_lock:
            return dict(self._repairs)

    def _repair_references(self, remotes: list[str], result: SyncResult, errors: dict) -> bool:
        """Phase 2: re-send records whose references were dropped on create.

        Returns False if authentication failed.
        """
        for (kind_name, local_id, remote), fields in self.pending_repairs().items():
            if remote not in remotes:
                continue
            kind = get_kind(kind_name)
            record = self.db.get(kind, local_id)
            remote_id = self.reconciler.resolve_remote_id(record, remote)
            if record is None or remote_id is None:
                continue
            _, still_dropped = self.reconciler.translate_foreign_keys(
                kind, record, Direction.PUSH, remote)
            if set(fields) <= set(still_dropped):
                continue
            try:
                self._send_update(kind, record, remote, remote_id)
                result.repaired += 1
            except AuthenticationError as e:
                errors["auth"] = str(e)
                return False
            except RECORD_ERRORS as e:
                errors[f"{remote}:{kind_name}#{local_id}"] = str(e)
                log.error(f"Reference repair failed for {kind_name} #{local_id} on {remote}: {e}")
        return True

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------
    def process_queue(self) -> Optional[DrainResult]:
        """Replay queued mutations. No-op when signed out."""
        if not self.auth.is_authenticated:
            log.info("Not authenticated, leaving the mutation queue for later")
            return None
        result = self.mutations.drain(self.dispatch)
        if result.succeeded:
            self._emit(SyncEvent.WRITE_SYNCED, ("queue", result.succeeded))
        if result.dead_lettered:
            self._emit(SyncEvent.SYNC_ERROR,
                       f"{result.dead_lettered} change(s) could not be synced and need attention")
        return result

    def reconnect(self) -> SyncResult:
        """Replay the queue, then pull fresh data."""
        drained = self.process_queue()
        if drained is None or drained.halted:
            return SyncResult(SyncStatus.FAILURE, "reconnect", errors={"auth": "Not authenticated"})
        waiting = self._queued_for(Remote.API)
        if waiting:
            log.warning("Changes still waiting for the API, skipping pull so they are not overwritten")
            return SyncResult(SyncStatus.PARTIAL_FAILURE, "reconnect",
                              errors={"queue": f"{waiting} change(s) still queued"})
        return self.pull_all()

    def _queued_for(self, remote: str) -> int:
        return sum(1 for e in self.mutations.entries() if e.remote == remote)

    # ------------------------------------------------------------------
    # Whole-dataset operations (mutually exclusive)
    # ------------------------------------------------------------------
    def _exclusive(self, operation: str, func, *args) -> SyncResult:
        if not self._sync_lock.acquire(blocking=False):
            log.info(f"{operation} skipped, a sync is already running")
            return SyncResult(SyncStatus.ALREADY_SYNCING, operation)
        try:
            self._emit(SyncEvent.SYNC_STARTED, operation)
            log.info(f"Starting {operation}...")
            result = func(*args)
        finally:
            self._sync_lock.release()
        return self._finish(result)

    def pull_all(self, last_write_wins: bool = False) -> SyncResult:
        return self._exclusive("pull", self._pull_all, last_write_wins)

    def push_all(self, include_synced: bool = False) -> SyncResult:
        return self._exclusive("push", self._push_all, include_synced)

    def full_sync(self, last_write_wins: bool = False) -> SyncResult:
        return self._exclusive("full_sync", self._full_sync, last_write_wins)

    def push_pending(self) -> SyncResult:
        return self._exclusive("push_pending", self._push_pending)

    def push_secondary(self) -> SyncResult:
        return self._exclusive("push_secondary", self._push_secondary)

    def pull_secondary(self, last_write_wins: bool = False) -> SyncResult:
        return self._exclusive("pull_secondary", self._pull_secondary, last_write_wins)

    def _pull_all(self, last_write_wins: bool = False) -> SyncResult:
        """Replace each local collection with the API's copy, kind by kind."""
        result = SyncResult(SyncStatus.SUCCESS, "pull")
        if not self.auth.is_authenticated:
            result.status = SyncStatus.FAILURE
            result.errors["auth"] = "Not authenticated"
            return result
        return self._pull_from(Remote.API, self.api.fetch_all, result, last_write_wins)

    def _pull_secondary(self, last_write_wins: bool = False) -> SyncResult:
        """Restore local data from the Supabase mirror."""
        result = SyncResult(SyncStatus.SUCCESS, "pull_secondary")
        if not self.secondary_available:
            result.status = SyncStatus.FAILURE
            result.errors["supabase"] = "Supabase is not available"
            return result
        waiting = self._queued_for(Remote.SUPABASE)
        if waiting:
            log.warning("Changes still waiting for Supabase, skipping restore so they are not overwritten")
            result.status = SyncStatus.FAILURE
            result.errors["queue"] = f"{waiting} change(s) still queued"
            return result

        def fetch(kind):
            return [self._from_supabase_row(row) for row in self.supabase.fetch_all(kind)]

        return self._pull_from(Remote.SUPABASE, fetch, result, last_write_wins)

    @staticmethod
    def _from_supabase_row(row: dict) -> dict:
        """Supabase row -> local document (camelCase keys, UUID as supabaseId)."""
        doc = {to_camel_case(column): value for column, value in row.items()
               if column not in ("id", "user_id")}
        doc[REMOTE_FIELDS[Remote.SUPABASE]] = row.get("id")
        return doc

    def _pull_from(self, remote: str, fetch, result: SyncResult, last_write_wins: bool) -> SyncResult:
        direction = "pull" if remote == Remote.API else f"pull_{remote}"
        halted = False
        for kind in KINDS:
            try:
                docs = [
                    self.reconciler.translate_foreign_keys(kind, doc, Direction.PULL, remote)[0]
                    for doc in fetch(kind)
                ]
                newer = self._keep_newer_local(kind, remote, docs) if last_write_wins else []
                count = self.db.replace_all(kind, remote, docs)
                for local_id in newer:
                    self.mutations.enqueue(kind, Operation.UPDATE, local_id, remote=remote)
                result.kinds[kind.name] = count
                self.db.log_sync(kind.name, direction, count)
                self._emit(SyncEvent.SYNC_PROGRESS, (kind.name, count))
                self._emit(SyncEvent.TABLE_UPDATED, kind.name)
                log.info(f"Pulled {count} {kind.name} from {remote}")
            except AuthenticationError as e:
                result.errors[kind.name] = str(e)
                self.db.log_sync(kind.name, direction, 0, "error", str(e))
                log.error(f"{kind.name} pull stopped, authentication required: {e}")
                halted = True
                break
            except Exception as e:
                result.errors[kind.name] = str(e)
                self.db.log_sync(kind.name, direction, 0, "error", str(e))
                log.error(f"{kind.name} pull from {remote} failed: {e}")

        if halted or not result.kinds:
            result.status = SyncStatus.FAILURE
        elif result.errors:
            result.status = SyncStatus.PARTIAL_FAILURE
        return result

    def _keep_newer_local(self, kind, remote: str, docs: list[dict]) -> list[int]:
        """Last write wins: put the local version in place of any pulled
        document edited here more recently. Ties go to the remote.

        Returns the local ids kept, which still have to be sent back.
        """
        id_field = REMOTE_FIELDS[remote]
        kept = []
        for i, doc in enumerate(docs):
            remote_id = doc.get(id_field)
            local_id = self.db.find_by_remote_id(kind, remote, remote_id) if remote_id else None
            local = self.db.get(kind, local_id) if local_id is not None else None
            if local is None or local.get("_shadow") or _timestamp(local) <= _timestamp(doc):
                continue
            docs[i] = local
            kept.append(local_id)
            log.info(f"Keeping local {kind.name} #{local_id}, newer than the {remote} copy")
        return kept

    def _migration_record(self, kind, record: dict) -> dict:
        """Local record for the migration upload: local id kept, references
        sent as remote ids where known so the server can link them."""
        body = self._api_body(record)
        body["id"] = record["id"]
        for fk_field, ref in kind.foreign_keys:
            value = record.get(fk_field)
            if value is None or value == "":
                continue
            translated, _ = self.reconciler.translate_foreign_keys(
                kind, {fk_field: value}, Direction.PUSH, Remote.API)
            if fk_field in translated:
                body[fk_field] = translated[fk_field]
        return body

    def _push_all(self, include_synced: bool = False) -> SyncResult:
        """Upload the local dataset to the migration endpoint in one request."""
        result = SyncResult(SyncStatus.SUCCESS, "push")
        if not self.auth.is_authenticated:
            result.status = SyncStatus.FAILURE
            result.errors["auth"] = "Not authenticated"
            return result

        exported = self.db.export_all()
        dataset = {}
        pushed = {}
        for kind in KINDS:
            records = exported.get(kind.export_key, [])
            if not include_synced:
                records = [r for r in records
                           if self.reconciler.resolve_remote_id(r, Remote.API) is None]
            dataset[kind.export_key] = [self._migration_record(kind, r) for r in records]
            pushed[kind] = records

        total = sum(len(records) for records in pushed.values())
        if total == 0:
            log.info("Nothing to push")
            return result
        dataset["exportedAt"] = exported["exportedAt"]

        try:
            response = self.api.migrate(dataset)
        except APIError as e:
            result.status = SyncStatus.FAILURE
            result.errors["migration"] = str(e)
            self.db.log_sync("migration", "push", 0, "error", str(e))
            log.error(f"Migration upload failed: {e}")
            return result

        details = response.get("details")
        if not isinstance(details, dict):
            details = response
        for kind in KINDS:
            summary = details.get(kind.export_key)
            if not isinstance(summary, dict):
                continue
            result.kinds[kind.name] = summary.get("imported", 0)
            rejected = summary.get("errors") or []
            if rejected:
                result.errors[kind.name] = f"{len(rejected)} record(s) rejected"

        adopted = self._adopt_migrated(pushed)

        self.db.log_sync("migration", "push", sum(result.kinds.values()))
        if result.errors:
            result.status = SyncStatus.PARTIAL_FAILURE
        log.info(f"Pushed {total} record(s) via migration upload, {adopted} matched to server ids")
        return result

    def _adopt_migrated(self, pushed: dict) -> int:
        """Bind migrated records to the ids the server gave them.

        The migration response only carries counts, so each uploaded record
        is matched against the server documents no local record claims yet.
        Records left unmatched stay unsynced and go out again one by one.
        """
        adopted = 0
        for kind, records in pushed.items():
            if not records:
                continue
            try:
                docs = self.api.fetch_all(kind)
            except AuthenticationError as e:
                log.error(f"Stopped matching migrated records, authentication required: {e}")
                break
            except APIError as e:
                log.warning(f"Could not fetch {kind.name} to match migrated records: {e}")
                continue

            unclaimed = [
                doc for doc in docs
                if doc.get("remoteId")
                and self.db.find_by_remote_id(kind, Remote.API, doc["remoteId"]) is None
            ]
            for record in records:
                match = next((d for d in unclaimed if _same_content(kind, record, d)), None)
                if match is None:
                    log.warning(f"No server copy found for migrated {kind.name} #{record['id']}")
                    continue
                unclaimed.remove(match)
                try:
                    self.reconciler.record_remote_id(kind, record["id"], Remote.API, match["remoteId"])
                    adopted += 1
                except (IdentityConflictError, ValueError) as e:
                    log.warning(f"Could not record migrated id for {kind.name} #{record['id']}: {e}")
        return adopted

    def _full_sync(self, last_write_wins: bool = False) -> SyncResult:
        """Replay the queue and create unsynced records, then pull.

        The pull is skipped while any local change has not reached the API,
        so it never overwrites an edit the server has not seen.
        """
        result = SyncResult(SyncStatus.SUCCESS, "full_sync")
        drained = self.process_queue()
        if drained is None or drained.halted:
            result.status = SyncStatus.FAILURE
            result.errors["auth"] = "Not authenticated"
            return result

        push = SyncResult(SyncStatus.SUCCESS, "push")
        if not self._create_missing([Remote.API], push) or \
                not self._repair_references([Remote.API], push, push.errors):
            push.status = SyncStatus.FAILURE
        result.repaired = push.repaired
        result.errors.update({f"push:{k}": v for k, v in push.errors.items()})
        waiting = self._queued_for(Remote.API)
        if waiting:
            result.errors["queue"] = f"{waiting} change(s) still queued"

        if push.status == SyncStatus.FAILURE:
            log.warning("Push half failed, skipping pull")
            result.status = SyncStatus.FAILURE
            return result
        if result.errors:
            log.warning("Local changes have not all reached the API, skipping pull")
            result.status = SyncStatus.PARTIAL_FAILURE
            return result

        pull = self._pull_all(last_write_wins)
        result.kinds = pull.kinds
        result.errors.update({f"pull:{k}": v for k, v in pull.errors.items()})
        if pull.status != SyncStatus.SUCCESS:
            result.status = pull.status
        return result

    def _push_pending(self) -> SyncResult:
        """Two-phase incremental push.

        Phase 1 creates every record that has no id on a remote yet, in
        dependency order. Phase 2 re-sends the records whose references
        could not be resolved during phase 1.
        """
        result = SyncResult(SyncStatus.SUCCESS, "push_pending")
        if not self.auth.is_authenticated:
            result.status = SyncStatus.FAILURE
            result.errors["auth"] = "Not authenticated"
            return result

        remotes = [Remote.API] + ([Remote.SUPABASE] if self.secondary_available else [])
        if not self._create_missing(remotes, result) or \
                not self._repair_references(remotes, result, result.errors):
            result.status = SyncStatus.FAILURE
        elif result.errors:
            result.status = SyncStatus.PARTIAL_FAILURE
        log.info(f"Pending push: {sum(result.kinds.values())} created, {result.repaired} repaired")
        return result

    def _create_missing(self, remotes: list[str], result: SyncResult) -> bool:
        """Phase 1. Returns False if authentication failed."""
        for remote in remotes:
            for kind in KINDS:
                for record in self.db.get_all(kind, include_shadows=False):
                    if self.reconciler.resolve_remote_id(record, remote) is not None:
                        continue
                    try:
                        self._send_create(kind, record, remote)
                        result.kinds[kind.name] = result.kinds.get(kind.name, 0) + 1
                    except AuthenticationError as e:
                        result.errors["auth"] = str(e)
                        return False
                    except RECORD_ERRORS as e:
                        result.errors[f"{remote}:{kind.name}#{record['id']}"] = str(e)
                        log.error(f"Create of {kind.name} #{record['id']} on {remote} failed: {e}")
        return True

    def _push_secondary(self) -> SyncResult:
        """Mirror every local record into Supabase."""
        result = SyncResult(SyncStatus.SUCCESS, "push_secondary")
        if not self.secondary_available:
            result.status = SyncStatus.FAILURE
            result.errors["supabase"] = "Supabase is not available"
            return result

        for kind in KINDS:
            for record in self.db.get_all(kind, include_shadows=False):
                remote_id = self.reconciler.resolve_remote_id(record, Remote.SUPABASE)
                try:
                    if remote_id is None:
                        self._send_create(kind, record, Remote.SUPABASE)
                    else:
                        self._send_update(kind, record, Remote.SUPABASE, remote_id)
                    result.kinds[kind.name] = result.kinds.get(kind.name, 0) + 1
                except (StoreError, IdentityConflictError, ValueError) as e:
                    result.errors[f"{kind.name}#{record['id']}"] = str(e)
                    log.error(f"Supabase sync failed for {kind.name} #{record['id']}: {e}")
            if kind.name in result.kinds:
                self.db.log_sync(kind.name, "push_supabase", result.kinds[kind.name])

        self._repair_references([Remote.SUPABASE], result, result.errors)
        if result.errors:
            result.status = SyncStatus.PARTIAL_FAILURE if result.kinds else SyncStatus.FAILURE
        return result

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------
    def audit(self) -> AuditReport:
        """Report where the API and Supabase copies have drifted apart."""
        report = AuditReport(secondary_checked=self.secondary_available)
        for kind in KINDS:
            records = self.db.get_all(kind, include_shadows=False)
            api_only, supabase_only, unsynced = [], [], []
            for record in records:
                on_api = self.reconciler.resolve_remote_id(record, Remote.API) is not None
                on_supa = self.reconciler.resolve_remote_id(record, Remote.SUPABASE) is not None
                if not report.secondary_checked:
                    if not on_api:
                        unsynced.append(record["id"])
                elif on_api and not on_supa:
                    api_only.append(record["id"])
                elif on_supa and not on_api:
                    supabase_only.append(record["id"])
                elif not on_api and not on_supa:
                    unsynced.append(record["id"])

            for bucket, ids in ((report.api_only, api_only),
                                (report.supabase_only, supabase_only),
                                (report.unsynced, unsynced)):
                if ids:
                    bucket[kind.name] = ids

            if report.secondary_checked:
                try:
                    rows = self.supabase.fetch_all(kind)
                except StoreError as e:
                    report.errors[kind.name] = str(e)
                    continue
                known = {r.get("supabaseId") for r in self.db.get_all(kind)}
                orphans = [row["id"] for row in rows if row.get("id") not in known]
                if orphans:
                    report.remote_orphans[kind.name] = orphans

        if report.consistent:
            log.info("Audit: remotes consistent")
        else:
            log.warning(
                f"Audit: {self._count(report.api_only)} API-only, "
                f"{self._count(report.supabase_only)} Supabase-only, "
                f"{self._count(report.unsynced)} unsynced, "
                f"{self._count(report.remote_orphans)} orphaned Supabase row(s)"
            )
        return report

    @staticmethod
    def _count(bucket: dict) -> int:
        return sum(len(ids) for ids in bucket.values())

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------
    def _run_loop(self, interval: int):
        """Main background loop. Backs off while passes keep failing."""
        failures = 0
        while not self._stop_event.is_set():
            try:
                ok = self.reconnect().ok
            except Exception as e:
                log.error(f"Background sync error: {e}")
                ok = False
            failures = 0 if ok else failures + 1
            delay = min(interval * (2 ** failures), config.SYNC_BACKOFF_MAX_SECONDS)
            if failures:
                log.info(f"Sync pass failed ({failures} in a row), next try in {delay}s")
            self._stop_event.wait(delay)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _finish(self, result: SyncResult) -> SyncResult:
        result.finished_at = datetime.now().isoformat()
        if result.status == SyncStatus.SUCCESS:
            self._last_sync_time = result.finished_at
            self.db.set_setting(LAST_SYNC_KEY, result.finished_at)
        if result.ok:
            self._emit(SyncEvent.SYNC_COMPLETE, result)
            log.info(f"{result.operation} complete")
        else:
            self._emit(SyncEvent.SYNC_ERROR, "; ".join(f"{k}: {v}" for k, v in result.errors.items()))
            log.warning(f"{result.operation} finished with status {result.status}")
        return result

    def _emit(self, event_type: str, data):
        """Put an event on the queue for the UI to consume."""
        self.event_queue.put((event_type, data))
