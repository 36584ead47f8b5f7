"""
Durable queue of local mutations waiting for a remote to confirm them.

The whole queue is written to app_settings after every change so nothing is
lost if the app exits mid-sync. Failed entries go to the back of the line;
after too many attempts they move to a dead-letter list for the user to
retry or discard.
"""

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Callable, Optional

from . import config
from .api import AuthenticationError
from .entities import Remote, get_kind

log = logging.getLogger("finsync.queue")

QUEUE_KEY = "mutation_queue"
DEAD_LETTER_KEY = "mutation_dead_letters"


class Operation:
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    ALL = (CREATE, UPDATE, DELETE)


@dataclass
class QueueEntry:
    kind: str
    operation: str
    local_id: int
    payload: dict = field(default_factory=dict)
    enqueued_at: str = field(default_factory=lambda: datetime.now().isoformat())
    remote: str = Remote.API
    attempts: int = 0
    last_error: str = ""
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "QueueEntry":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class DrainResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    remaining: int = 0
    halted: bool = False
    already_running: bool = False
    errors: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.halted and self.failed == 0 and self.dead_lettered == 0


class MutationQueue:
    """FIFO of pending remote writes, persisted through the Database."""

    def __init__(self, db, max_attempts: int = None):
        self.db = db
        self.max_attempts = max_attempts or config.QUEUE_MAX_ATTEMPTS
        self._entries: list[QueueEntry] = []
        self._dead: list[QueueEntry] = []
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _read(self, key: str) -> list[QueueEntry]:
        raw = self.db.get_setting(key, "[]")
        try:
            items = json.loads(raw or "[]")
        except ValueError as e:
            log.error(f"Stored {key} is not valid JSON, starting empty: {e}")
            return []
        entries = []
        for item in items:
            try:
                entries.append(QueueEntry.from_dict(item))
            except TypeError as e:
                log.warning(f"Dropping malformed {key} entry {item!r}: {e}")
        return entries

    def load(self):
        """Reload the queue and dead letters from durable storage."""
        with self._lock:
            self._entries = self._read(QUEUE_KEY)
            self._dead = self._read(DEAD_LETTER_KEY)
        if self._entries or self._dead:
            log.info(f"Loaded {len(self._entries)} queued mutation(s), "
                     f"{len(self._dead)} dead letter(s)")

    def _persist(self):
        self.db.set_setting(QUEUE_KEY, json.dumps([e.to_dict() for e in self._entries], default=str))
        self.db.set_setting(DEAD_LETTER_KEY, json.dumps([e.to_dict() for e in self._dead], default=str))

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------
    def enqueue(self, kind, operation: str, local_id: int, payload: dict = None,
                remote: str = Remote.API) -> QueueEntry:
        if operation not in Operation.ALL:
            raise ValueError(f"Unknown operation: {operation!r}")
        if remote not in Remote.ALL:
            raise ValueError(f"Unknown remote: {remote!r}")
        entry = QueueEntry(
            kind=get_kind(kind).name,
            operation=operation,
            local_id=local_id,
            payload=dict(payload or {}),
            remote=remote,
        )
        with self._lock:
            self._entries.append(entry)
            self._persist()
        log.info(f"Queued {operation} {entry.kind} #{local_id} for {remote}")
        return entry

    def _remove(self, entry: QueueEntry):
        self._entries = [e for e in self._entries if e.entry_id != entry.entry_id]

    def drain(self, dispatch: Callable[[QueueEntry], object]) -> DrainResult:
        """One pass over the entries queued when the pass starts.

        Never raises. An authentication failure stops the pass and leaves
        the remaining entries untouched for after the next login.
        """
        if not self._drain_lock.acquire(blocking=False):
            log.debug("Queue drain already running")
            return DrainResult(already_running=True, remaining=self.length())

        result = DrainResult()
        try:
            with self._lock:
                batch = list(self._entries)

            for entry in batch:
                result.processed += 1
                try:
                    dispatch(entry)
                except AuthenticationError as e:
                    result.processed -= 1
                    result.halted = True
                    result.errors.append(str(e))
                    log.warning(f"Queue drain halted, authentication required: {e}")
                    break
                except Exception as e:
                    self._record_failure(entry, e, result)
                    continue

                with self._lock:
                    self._remove(entry)
                    self._persist()
                result.succeeded += 1
                log.info(f"Replayed {entry.operation} {entry.kind} #{entry.local_id} on {entry.remote}")
        finally:
            self._drain_lock.release()

        result.remaining = self.length()
        return result

    def _record_failure(self, entry: QueueEntry, error: Exception, result: DrainResult):
        entry.attempts += 1
        entry.last_error = str(error)
        result.errors.append(f"{entry.operation} {entry.kind} #{entry.local_id}: {error}")
        with self._lock:
            self._remove(entry)
            if entry.attempts >= self.max_attempts:
                self._dead.append(entry)
                result.dead_lettered += 1
                log.error(f"Mutation failed after {entry.attempts} attempts, moved to dead letters: "
                          f"{entry.operation} {entry.kind} #{entry.local_id} - {error}")
            else:
                self._entries.append(entry)
                result.failed += 1
                log.warning(f"Mutation retry ({entry.attempts}/{self.max_attempts}): "
                            f"{entry.operation} {entry.kind} #{entry.local_id} - {error}")
            self._persist()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    def is_empty(self) -> bool:
        return self.length() == 0

    def length(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self):
        return self.length()

    def entries(self) -> list[QueueEntry]:
        with self._lock:
            return list(self._entries)

    def pending_for(self, kind, local_id: int, remote: str = None) -> list[QueueEntry]:
        name = get_kind(kind).name
        with self._lock:
            return [
                e for e in self._entries
                if e.kind == name and e.local_id == local_id
                and (remote is None or e.remote == remote)
            ]

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------
    def dead_letters(self) -> list[QueueEntry]:
        with self._lock:
            return list(self._dead)

    def retry_dead_letters(self) -> int:
        """Move every dead letter back to the tail with a fresh attempt count."""
        with self._lock:
            revived = self._dead
            for entry in revived:
                entry.attempts = 0
                entry.last_error = ""
            self._entries.extend(revived)
            self._dead = []
            self._persist()
        if revived:
            log.info(f"Re-queued {len(revived)} dead letter(s)")
        return len(revived)

    def discard_dead_letters(self) -> int:
        with self._lock:
            count = len(self._dead)
            self._dead = []
            self._persist()
        if count:
            log.warning(f"Discarded {count} dead letter(s)")
        return count

    def clear(self, entry_id: Optional[str] = None) -> int:
        """Remove one entry by id, or everything queued when no id is given."""
        with self._lock:
            before = len(self._entries)
            if entry_id is None:
                self._entries = []
            else:
                self._entries = [e for e in self._entries if e.entry_id != entry_id]
            removed = before - len(self._entries)
            self._persist()
        if removed:
            log.warning(f"Dropped {removed} queued mutation(s)")
        return removed
