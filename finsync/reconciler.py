"""
Identity reconciliation between local ids and the ids each remote assigns.

Local records always reference each other by local id. Before a record goes
out, its foreign keys are swapped for the referent's remote id; when records
come back in, remote ids are swapped for local ids (creating shadow records
for referents we have not seen yet).
"""

import logging
import re
from typing import Optional

from .entities import REMOTE_FIELDS, Remote, get_kind

log = logging.getLogger("finsync.reconciler")

UUID4_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}",
    re.IGNORECASE,
)


class IdFormat:
    UUID4 = "uuid4"
    OPAQUE = "opaque"


ID_FORMATS = {
    Remote.API: IdFormat.OPAQUE,
    Remote.SUPABASE: IdFormat.UUID4,
}


class Direction:
    PUSH = "push"
    PULL = "pull"


class IdentityConflictError(Exception):
    """Raised when a remote id would be bound to a second local record."""
    pass


def is_valid_id(candidate, fmt: str) -> bool:
    """An id failing validation is treated exactly like a missing id."""
    if not isinstance(candidate, str) or not candidate:
        return False
    if fmt == IdFormat.UUID4:
        return UUID4_RE.fullmatch(candidate) is not None
    return candidate == candidate.strip()


def _as_local_id(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


class IdentityReconciler:
    """Maps local ids to remote ids (and back) on top of the Database."""

    def __init__(self, db):
        self.db = db

    def resolve_remote_id(self, record: dict, remote: str) -> Optional[str]:
        if not record:
            return None
        candidate = record.get(REMOTE_FIELDS[remote])
        return candidate if is_valid_id(candidate, ID_FORMATS[remote]) else None

    def remote_id_for(self, kind, local_id: int, remote: str) -> Optional[str]:
        record = self.db.get(kind, local_id)
        return self.resolve_remote_id(record, remote)

    def record_remote_id(self, kind, local_id: int, remote: str, remote_id: str) -> bool:
        """Persist the id a remote assigned after a successful create.

        Re-recording the same id is a no-op. Returns False when the local
        record no longer exists.
        """
        kind = get_kind(kind)
        if not is_valid_id(remote_id, ID_FORMATS[remote]):
            raise ValueError(f"Malformed {remote} id for {kind.name} #{local_id}: {remote_id!r}")

        record = self.db.get(kind, local_id)
        if record is None:
            log.warning(f"Cannot record {remote} id for missing {kind.name} #{local_id}")
            return False

        current = self.resolve_remote_id(record, remote)
        if current == remote_id:
            return True

        owner = self.db.find_by_remote_id(kind, remote, remote_id)
        if owner is not None and owner != local_id:
            raise IdentityConflictError(
                f"{remote} id {remote_id} already belongs to {kind.name} #{owner}"
            )
        if current is not None:
            raise IdentityConflictError(
                f"{kind.name} #{local_id} already has {remote} id {current}"
            )

        self.db.set_remote_id(kind, local_id, remote, remote_id)
        log.debug(f"Recorded {remote} id {remote_id} for {kind.name} #{local_id}")
        return True

    def forget_remote_id(self, kind, local_id: int, remote: str):
        """Drop an id the remote no longer recognises so the next push creates."""
        kind = get_kind(kind)
        self.db.set_remote_id(kind, local_id, remote, None)
        log.info(f"Forgot stale {remote} id on {kind.name} #{local_id}")

    def local_id_for(self, kind, remote: str, remote_id, create_shadow: bool = True) -> Optional[int]:
        if not is_valid_id(remote_id, ID_FORMATS[remote]):
            return None
        local_id = self.db.find_by_remote_id(kind, remote, remote_id)
        if local_id is not None or not create_shadow:
            return local_id
        return self.db.insert_shadow(kind, remote, remote_id)

    # ------------------------------------------------------------------
    # Foreign keys
    # ------------------------------------------------------------------
    def translate_foreign_keys(self, kind, record: dict, direction: str,
                               remote: str) -> tuple[dict, list[str]]:
        """Rewrite the record's foreign keys into the target id space.

        Returns the translated copy and the fields that had to be dropped
        because no counterpart exists yet. A dropped reference means "unset"
        on the far side, never zero.
        """
        kind = get_kind(kind)
        out = dict(record)
        dropped = []

        for field, ref in kind.foreign_keys:
            value = out.get(field)
            if value is None or value == "":
                continue

            if direction == Direction.PUSH:
                local_id = _as_local_id(value)
                translated = (
                    self.remote_id_for(ref, local_id, remote) if local_id is not None else None
                )
            else:
                # Populated references arrive as embedded documents
                if isinstance(value, dict):
                    value = value.get("_id") or value.get("id")
                translated = self.local_id_for(ref, remote, str(value) if value else None)

            if translated is None:
                out.pop(field, None)
                dropped.append(field)
                log.debug(f"{direction}: dropped unresolved {kind.name}.{field}={value!r}")
            else:
                out[field] = translated

        return out, dropped
