"""
PathDocument - the single mutable state tree.

All state lives in one rooted tree of nested mappings addressed by dotted
paths ("learning.patterns", "game.chips.total"). The document is the ONLY
writer of that tree:

- writing creates any missing intermediate mappings
- writing below a non-mapping value replaces it with a mapping (last write wins)
- arrays are leaves, replaced as a whole; paths never index into them
- every mutation emits a ChangeEvent to subscribers, in call order

Reserved namespaces belong to one owner (the document itself, or the pattern
learner). Other callers writing there get InvalidPathError.
"""

import copy
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import STATE_FORMAT_VERSION
from .errors import InvalidPathError, InvalidValueError
from .values import Value, normalize_value

logger = logging.getLogger("path_document")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
DEEP_NESTING_WARNING = 10

OWNER_DOCUMENT = "document"
OWNER_LEARNER = "learner"
OWNER_SYSTEM = "system"  # rollback and bulk restore may write anywhere

RESERVED_NAMESPACES: Dict[str, str] = {
    "metadata": OWNER_DOCUMENT,
    "learning.fixAttempts": OWNER_LEARNER,
    "learning.patterns": OWNER_LEARNER,
    "learning.misdiagnosisPatterns": OWNER_LEARNER,
    "learning.generalizationRules": OWNER_LEARNER,
}

_MISSING = object()


def now_ms() -> int:
    return int(time.time() * 1000)


# -----------------------------------------------------------------------------
# Change Event
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ChangeEvent:
    """One completed mutation, delivered to subscribers after the write."""
    path: str
    old_value: Any
    new_value: Any
    created: bool = False  # path did not exist before
    deleted: bool = False  # path no longer exists
    owner: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], None]


def split_path(path: Any) -> List[str]:
    """Validate a dotted path and return its segments."""
    if not isinstance(path, str) or not path:
        raise InvalidPathError(path, "path must be a non-empty string")
    segments = path.split(".")
    for segment in segments:
        if not segment:
            raise InvalidPathError(path, "empty path segment")
        if not SEGMENT_PATTERN.match(segment):
            raise InvalidPathError(path, f"segment {segment!r} contains invalid characters")
    if len(segments) > DEEP_NESTING_WARNING:
        logger.debug(f"Deep nesting at {path} ({len(segments)} levels)")
    return segments


def is_within(path: str, prefix: str) -> bool:
    """True when path equals prefix or lies below it."""
    return path == prefix or path.startswith(prefix + ".")


# -----------------------------------------------------------------------------
# Path Document
# -----------------------------------------------------------------------------
class PathDocument:
    """
    In-memory tree keyed by dotted paths.

    Mutations take a re-entrant lock so "create intermediates, then write" is
    atomic even on a multi-threaded host. Reads return deep copies; nobody
    outside the document holds a live reference into the tree.
    """

    def __init__(
        self,
        initial: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._clock = clock or now_ms
        self._lock = threading.RLock()
        self._subscribers: List[ChangeCallback] = []
        self._watchers: Dict[str, List[ChangeCallback]] = {}
        self._root: Dict[str, Any] = {}
        self._install_root(normalize_value(initial or {}))

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, path: Optional[str] = None) -> Optional[Value]:
        """Value at path, or None when absent. Never raises for a missing path."""
        if path is None:
            return self.snapshot()
        segments = split_path(path)
        with self._lock:
            found, value = self._lookup(segments)
            return copy.deepcopy(value) if found else None

    def exists(self, path: str) -> bool:
        segments = split_path(path)
        with self._lock:
            found, _ = self._lookup(segments)
            return found

    def query(
        self,
        path: str,
        where: Optional[Callable[[Any], bool]] = None,
        order_by: Optional[Callable[[Any], Any]] = None,
        limit: Optional[int] = None,
        reverse: bool = False,
    ) -> Optional[Value]:
        """
        Filtered read of an array value.

        Non-array values are returned as-is; a missing path returns None.
        """
        data = self.get(path)
        if not isinstance(data, list):
            return data
        result = data
        if where is not None:
            result = [item for item in result if where(item)]
        if order_by is not None:
            result = sorted(result, key=order_by, reverse=reverse)
        if limit is not None:
            result = result[:limit]
        return result

    def snapshot(self) -> Dict[str, Any]:
        """Detached deep copy of the whole tree."""
        with self._lock:
            return copy.deepcopy(self._root)

    @property
    def update_count(self) -> int:
        with self._lock:
            return int(self._root.get("metadata", {}).get("updateCount", 0))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(
        self,
        path: str,
        value: Any,
        owner: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChangeEvent:
        """Replace the value at path, creating intermediate mappings."""
        segments = split_path(path)
        self._check_owner(path, owner)
        normalized = normalize_value(value, path)
        with self._lock:
            found, old = self._lookup(segments)
            self._write(segments, normalized)
            event = ChangeEvent(
                path=path,
                old_value=old if found else None,
                new_value=copy.deepcopy(normalized),
                created=not found,
                owner=owner,
                metadata=dict(metadata or {}),
            )
            self._after_change(event)
            return event

    def update(
        self,
        path: str,
        updater: Callable[[Any], Any],
        default: Any = None,
        owner: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Value:
        """
        Read-modify-write under the document lock.

        The updater receives a private copy of the current value (or of
        default when absent) and returns the new value.
        """
        segments = split_path(path)
        self._check_owner(path, owner)
        with self._lock:
            found, current = self._lookup(segments)
            working = copy.deepcopy(current) if found else copy.deepcopy(default)
            self.set(path, updater(working), owner=owner, metadata=metadata)
            return self.get(path)

    def merge(
        self,
        path: str,
        values: Dict[str, Any],
        owner: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Value:
        """Merge keys into the mapping at path, one level deep."""
        if not isinstance(values, dict):
            raise InvalidValueError(path, "merge requires a mapping")

        def _merge(current: Any) -> Dict[str, Any]:
            base = current if isinstance(current, dict) else {}
            base.update(values)
            return base

        return self.update(path, _merge, default={}, owner=owner, metadata=metadata)

    def delete(
        self,
        path: str,
        owner: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Remove the value at path. Returns False when nothing was there."""
        segments = split_path(path)
        self._check_owner(path, owner)
        with self._lock:
            found, old = self._lookup(segments)
            if not found:
                return False
            parent = self._root
            for segment in segments[:-1]:
                parent = parent[segment]
            del parent[segments[-1]]
            self._after_change(ChangeEvent(
                path=path,
                old_value=old,
                new_value=None,
                deleted=True,
                owner=owner,
                metadata=dict(metadata or {}),
            ))
            return True

    def restore(self, root: Dict[str, Any]) -> None:
        """
        Replace the whole tree, e.g. after loading from disk.

        No change events are emitted; the restored state is the new baseline.
        """
        normalized = normalize_value(root or {})
        if not isinstance(normalized, dict):
            raise InvalidValueError("", "document root must be a mapping")
        with self._lock:
            self._install_root(normalized)
        logger.info(f"Document restored ({len(normalized)} top-level sections)")

    def mark_saved(self, saved_at: int) -> None:
        """Record the timestamp of the last successful persistence."""
        with self._lock:
            self._root.setdefault("metadata", {})["savedAt"] = saved_at

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Receive every change. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def watch(self, path: str, callback: ChangeCallback) -> Callable[[], None]:
        """Receive changes at path or anywhere below it."""
        split_path(path)
        with self._lock:
            self._watchers.setdefault(path, []).append(callback)

        def _unwatch() -> None:
            with self._lock:
                callbacks = self._watchers.get(path, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._watchers.pop(path, None)

        return _unwatch

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _install_root(self, root: Dict[str, Any]) -> None:
        self._root = root
        meta = self._root.get("metadata")
        if not isinstance(meta, dict):
            meta = {}
            self._root["metadata"] = meta
        now = self._clock()
        meta.setdefault("version", STATE_FORMAT_VERSION)
        meta.setdefault("started", now)
        meta.setdefault("lastUpdate", now)
        meta.setdefault("updateCount", 0)

    def _check_owner(self, path: str, owner: Optional[str]) -> None:
        if owner == OWNER_SYSTEM:
            return
        for namespace, namespace_owner in RESERVED_NAMESPACES.items():
            # Writing the namespace itself, below it, or an ancestor that contains it
            if is_within(path, namespace) or is_within(namespace, path):
                if owner != namespace_owner:
                    raise InvalidPathError(
                        path, f"'{namespace}' is reserved for the {namespace_owner}"
                    )

    def _lookup(self, segments: List[str]) -> Tuple[bool, Any]:
        current: Any = self._root
        for segment in segments:
            if not isinstance(current, dict) or segment not in current:
                return False, None
            current = current[segment]
        return True, current

    def _write(self, segments: List[str], value: Value) -> None:
        current = self._root
        for segment in segments[:-1]:
            child = current.get(segment)
            if not isinstance(child, dict):
                child = {}
                current[segment] = child
            current = child
        current[segments[-1]] = value

    def _after_change(self, event: ChangeEvent) -> None:
        meta = self._root.setdefault("metadata", {})
        meta["lastUpdate"] = self._clock()
        meta["updateCount"] = int(meta.get("updateCount", 0)) + 1

        for callback in list(self._subscribers):
            callback(event)

        for watched, callbacks in list(self._watchers.items()):
            if is_within(event.path, watched) or is_within(watched, event.path):
                for callback in list(callbacks):
                    callback(event)
