"""
Change Log - bounded audit trail of state mutations.

Every document change passes through an importance policy:
- CRITICAL paths keep full old/new values (usable for rollback)
- AUXILIARY paths keep a digest, a truncated preview and the encoded size
- SKIP paths (high-frequency noise such as system.health.*) are not logged

The log holds at most max_entries entries. Oldest entries are evicted first
and, when an archive file is configured, appended to it (JSONL, fsync'd) for
forensic queries. Archived entries are never needed for correctness.

A value that cannot be serialized is replaced by a placeholder. One bad entry
never stops logging of the next one.
"""

import hashlib
import json
import logging
import os
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .document import ChangeEvent, OWNER_SYSTEM, PathDocument, is_within, now_ms
from .errors import SerializationError

logger = logging.getLogger("change_log")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_MAX_ENTRIES = 10000
DEFAULT_PREVIEW_CHARS = 200

DEFAULT_CRITICAL_PREFIXES = ("issues", "fixes", "learning", "game")
DEFAULT_SKIP_PREFIXES = ("system.health", "metadata")
# Derived from learning.fixAttempts and rebuilt on load
DEFAULT_AUXILIARY_PREFIXES = ("learning.patterns", "learning.misdiagnosisPatterns")


# -----------------------------------------------------------------------------
# Importance Policy
# -----------------------------------------------------------------------------
class Importance(str, Enum):
    """How much of a change is kept."""
    CRITICAL = "critical"
    AUXILIARY = "auxiliary"
    SKIP = "skip"


@dataclass
class ImportancePolicy:
    """
    Prefix-based classification of paths.

    A prefix matches the path itself and everything below it. When several
    prefixes match, the longest one wins, so "system.health" can be skipped
    while "system" stays auxiliary.
    """
    critical_prefixes: Tuple[str, ...] = DEFAULT_CRITICAL_PREFIXES
    auxiliary_prefixes: Tuple[str, ...] = DEFAULT_AUXILIARY_PREFIXES
    skip_prefixes: Tuple[str, ...] = DEFAULT_SKIP_PREFIXES
    default: Importance = Importance.AUXILIARY
    preview_chars: int = DEFAULT_PREVIEW_CHARS

    def classify(self, path: str) -> Importance:
        best: Optional[Tuple[int, Importance]] = None
        for prefixes, importance in (
            (self.critical_prefixes, Importance.CRITICAL),
            (self.auxiliary_prefixes, Importance.AUXILIARY),
            (self.skip_prefixes, Importance.SKIP),
        ):
            for prefix in prefixes:
                if is_within(path, prefix) and (best is None or len(prefix) > best[0]):
                    best = (len(prefix), importance)
        return best[1] if best else self.default

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportancePolicy":
        return cls(
            critical_prefixes=tuple(data.get("critical", DEFAULT_CRITICAL_PREFIXES)),
            auxiliary_prefixes=tuple(data.get("auxiliary", DEFAULT_AUXILIARY_PREFIXES)),
            skip_prefixes=tuple(data.get("skip", DEFAULT_SKIP_PREFIXES)),
            default=Importance(data.get("default", Importance.AUXILIARY.value)),
            preview_chars=int(data.get("preview_chars", DEFAULT_PREVIEW_CHARS)),
        )


# -----------------------------------------------------------------------------
# Change Log Entry (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ChangeLogEntry:
    """
    One logged mutation.

    Entries are ordered by (timestamp, seq). seq is strictly increasing;
    timestamp never goes backwards.
    """
    seq: int
    timestamp: int  # wall-clock ms
    path: str
    old_value: Any
    new_value: Any
    importance: str  # Importance value
    created: bool = False
    full_values: bool = True  # False when values were summarized
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": self.timestamp,
            "path": self.path,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "importance": self.importance,
            "created": self.created,
            "full_values": self.full_values,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeLogEntry":
        return cls(
            seq=int(data["seq"]),
            timestamp=int(data["timestamp"]),
            path=data["path"],
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            importance=data.get("importance", Importance.CRITICAL.value),
            created=bool(data.get("created", False)),
            full_values=bool(data.get("full_values", True)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class RollbackResult:
    """Outcome of a best-effort rollback."""
    restored: int
    skipped: Tuple[str, ...]  # paths whose values were only summarized

    def to_dict(self) -> Dict[str, Any]:
        return {"restored": self.restored, "skipped": list(self.skipped)}


# -----------------------------------------------------------------------------
# Change Log
# -----------------------------------------------------------------------------
class ChangeLog:
    """
    Append-only, size-bounded sequence of ChangeLogEntry.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        policy: Optional[ImportancePolicy] = None,
        archive_file: Optional[Path] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._policy = policy or ImportancePolicy()
        self._archive_file = archive_file
        self._clock = clock or now_ms
        self._entries: Deque[ChangeLogEntry] = deque()
        self._lock = threading.RLock()
        self._seq = 0
        self._last_timestamp = 0
        self.serialization_failures = 0
        self.evicted_count = 0

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def policy(self) -> ImportancePolicy:
        return self._policy

    def __len__(self) -> int:
        return len(self._entries)

    def attach(self, document: PathDocument) -> Callable[[], None]:
        """Log every change made to document. Returns an unsubscribe function."""
        return document.subscribe(self._on_change)

    # -------------------------------------------------------------------------
    # Write Operations (Append-Only)
    # -------------------------------------------------------------------------

    def record(
        self,
        path: str,
        old_value: Any,
        new_value: Any,
        created: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ChangeLogEntry]:
        """
        Append an entry when the policy logs path.

        Returns the entry, or None when the path is skipped.
        """
        importance = self._policy.classify(path)
        if importance == Importance.SKIP:
            return None

        old_stored, old_full = self._store_value(path, old_value, importance)
        new_stored, new_full = self._store_value(path, new_value, importance)

        with self._lock:
            self._seq += 1
            self._last_timestamp = max(self._clock(), self._last_timestamp)
            entry = ChangeLogEntry(
                seq=self._seq,
                timestamp=self._last_timestamp,
                path=path,
                old_value=old_stored,
                new_value=new_stored,
                importance=importance.value,
                created=created,
                full_values=old_full and new_full,
                metadata=dict(metadata or {}),
            )
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                self.trim(self._max_entries)
            return entry

    def trim(self, max_entries: Optional[int] = None) -> int:
        """Evict the oldest entries beyond max_entries. Returns the evicted count."""
        limit = self._max_entries if max_entries is None else max_entries
        with self._lock:
            overflow = len(self._entries) - limit
            if overflow <= 0:
                return 0
            evicted = [self._entries.popleft() for _ in range(overflow)]
            self.evicted_count += overflow
        if self._archive_file is not None:
            self._archive(evicted)
        return overflow

    @classmethod
    def from_list(cls, records: Iterable[Dict[str, Any]], **kwargs: Any) -> "ChangeLog":
        log = cls(**kwargs)
        log.restore(records)
        return log

    def restore(self, records: Iterable[Dict[str, Any]]) -> int:
        """Replace the in-memory log with persisted records. Returns entries kept."""
        entries = []
        for record in records:
            try:
                entries.append(ChangeLogEntry.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed persisted change log entry: {e}")
        entries.sort(key=lambda e: (e.timestamp, e.seq))
        with self._lock:
            self._entries = deque(entries[-self._max_entries:])
            if self._entries:
                self._seq = max(self._seq, self._entries[-1].seq)
                self._last_timestamp = max(self._last_timestamp, self._entries[-1].timestamp)
            return len(self._entries)

    # -------------------------------------------------------------------------
    # Read Operations (Read-Only)
    # -------------------------------------------------------------------------

    def query(
        self,
        path: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[ChangeLogEntry]:
        """
        Entries in chronological order.

        path matches the path itself and its descendants. limit keeps the most
        recent matches.
        """
        with self._lock:
            entries = list(self._entries)
        result = [
            entry for entry in entries
            if (path is None or is_within(entry.path, path))
            and (since is None or entry.timestamp >= since)
            and (until is None or entry.timestamp <= until)
        ]
        if limit is not None:
            result = result[-limit:] if limit > 0 else []
        return result

    def history(self, path: str, window_ms: Optional[int] = None) -> List[ChangeLogEntry]:
        """How path changed, optionally within the last window_ms."""
        since = self._clock() - window_ms if window_ms is not None else None
        return self.query(path=path, since=since)

    def to_list(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent entries as dicts, for persistence."""
        return [entry.to_dict() for entry in self.query(limit=limit)]

    def load_archived(
        self,
        path: Optional[str] = None,
        since: Optional[int] = None,
    ) -> List[ChangeLogEntry]:
        """Read evicted entries back from the archive file."""
        if self._archive_file is None or not self._archive_file.exists():
            return []
        entries = []
        with open(self._archive_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = ChangeLogEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    # Skip malformed lines
                    continue
                if path is not None and not is_within(entry.path, path):
                    continue
                if since is not None and entry.timestamp < since:
                    continue
                entries.append(entry)
        return entries

    # -------------------------------------------------------------------------
    # Rollback (Best-Effort)
    # -------------------------------------------------------------------------

    def revert_since(
        self,
        document: PathDocument,
        since: int,
        path: Optional[str] = None,
    ) -> RollbackResult:
        """
        Undo logged changes made at or after since, newest first.

        Only entries with full values can be undone. Reverting writes through
        the document, so the reverts are themselves logged.
        """
        targets = self.query(path=path, since=since)
        restored = 0
        skipped: List[str] = []
        for entry in reversed(targets):
            if not entry.full_values:
                skipped.append(entry.path)
                continue
            meta = {"source": "rollback", "reverted_seq": entry.seq}
            if entry.created:
                document.delete(entry.path, owner=OWNER_SYSTEM, metadata=meta)
            else:
                document.set(entry.path, entry.old_value, owner=OWNER_SYSTEM, metadata=meta)
            restored += 1
        if skipped:
            logger.info(f"Rollback skipped {len(skipped)} summarized entries")
        return RollbackResult(restored=restored, skipped=tuple(skipped))

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _on_change(self, event: ChangeEvent) -> None:
        metadata = dict(event.metadata)
        if event.deleted:
            metadata["deleted"] = True
        self.record(
            event.path,
            event.old_value,
            event.new_value,
            created=event.created,
            metadata=metadata,
        )

    def _store_value(self, path: str, value: Any, importance: Importance) -> Tuple[Any, bool]:
        """
        Returns (stored form, whether the stored form is the full value).
        """
        try:
            encoded = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError, RecursionError) as e:
            error = SerializationError(path, str(e))
            logger.warning(error.message)
            self.serialization_failures += 1
            return {"unserializable": True, "reason": str(e)}, False

        if importance == Importance.CRITICAL:
            return json.loads(encoded), True

        if not isinstance(value, (dict, list)) and len(encoded) <= self._policy.preview_chars:
            return value, True

        return {
            "digest": hashlib.sha256(encoded.encode()).hexdigest()[:16],
            "preview": encoded[:self._policy.preview_chars],
            "size": len(encoded),
        }, False

    def _archive(self, entries: List[ChangeLogEntry]) -> None:
        """
        Append evicted entries to the archive file with fsync.

        APPEND-ONLY: Only appends, never modifies.
        """
        try:
            self._archive_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._archive_file, "a") as f:
                for entry in entries:
                    f.write(json.dumps(entry.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            # Archive is forensic only; the live log stays consistent
            logger.error(f"Failed to archive {len(entries)} change log entries: {e}")
