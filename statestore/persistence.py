"""
Persistence Manager - durable snapshots of the document and change log.

File format (JSON):
    {"version": ..., "savedAt": <ms>, "state": {...}, "changeLog": [...]}

CONSTRAINTS:
- The snapshot is taken synchronously when save() is called; later writes
  to the document do not leak into a save in flight
- Write to a temp file, fsync, read it back, then os.replace over the
  previous copy. A failed or aborted save never leaves a partial file
- NO SILENT SHRINK: a container that is non-empty in memory must not be
  written as empty, shorter or missing. The save retries with the full JSON
  codec, then keeps the previously saved value, then fails loudly
- Saves are serialized: a save in flight delays the next one, including a
  timed out save whose worker thread has not stopped yet
- A timed out save reports failure only if it never replaced the file;
  a replace that won the race is reported as a success
- All timers come from the injected ticker
"""

import asyncio
import copy
import itertools
import json
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from . import STATE_FORMAT_VERSION
from .change_log import ChangeLog
from .document import PathDocument, now_ms
from .errors import PersistenceCorruptError, PersistenceWriteError
from .scheduling import AsyncioTicker, ScheduledCall, Ticker

logger = logging.getLogger("persistence")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_SAVE_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.1
DEFAULT_PERSISTED_LOG_ENTRIES = 1000


# -----------------------------------------------------------------------------
# Codecs
# -----------------------------------------------------------------------------
class JsonCodec:
    """Reference codec. Full serialization, nothing elided."""

    name = "json"

    def encode(self, payload: Dict[str, Any]) -> bytes:
        return json.dumps(payload, indent=2).encode("utf-8")

    def decode(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
class LoadOutcome(str, Enum):
    LOADED = "loaded"
    EMPTY = "empty"  # no prior state
    CORRUPT = "corrupt"  # prior state unreadable, started empty


@dataclass(frozen=True)
class SaveResult:
    file_path: str
    saved_at: int
    bytes_written: int
    attempts: int
    codec: str
    change_log_entries: int
    preserved_paths: Tuple[str, ...] = ()  # kept from the previous file

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "saved_at": self.saved_at,
            "bytes_written": self.bytes_written,
            "attempts": self.attempts,
            "codec": self.codec,
            "change_log_entries": self.change_log_entries,
            "preserved_paths": list(self.preserved_paths),
        }


@dataclass(frozen=True)
class LoadResult:
    outcome: LoadOutcome
    file_path: str
    saved_at: Optional[int] = None
    change_log_entries: int = 0
    error: Optional[str] = None
    backup_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "file_path": self.file_path,
            "saved_at": self.saved_at,
            "change_log_entries": self.change_log_entries,
            "error": self.error,
            "backup_path": self.backup_path,
        }


# -----------------------------------------------------------------------------
# Shrink Detection
# -----------------------------------------------------------------------------
def find_shrunk_paths(expected: Any, actual: Any, prefix: str = "") -> List[str]:
    """
    Paths of containers that are non-empty in expected but empty, shorter,
    missing or of another type in actual.

    Mappings are compared recursively; arrays compare by length only.
    """
    shrunk: List[str] = []
    if not isinstance(expected, dict):
        return shrunk
    actual_map = actual if isinstance(actual, dict) else {}
    for key, value in expected.items():
        path = f"{prefix}.{key}" if prefix else key
        if not isinstance(value, (dict, list)) or not value:
            continue
        counterpart = actual_map.get(key)
        if isinstance(value, list):
            if not isinstance(counterpart, list) or len(counterpart) < len(value):
                shrunk.append(path)
        elif not isinstance(counterpart, dict) or not counterpart:
            shrunk.append(path)
        else:
            shrunk.extend(find_shrunk_paths(value, counterpart, path))
    return shrunk


def _lookup(root: Any, path: str) -> Tuple[bool, Any]:
    current = root
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def _assign(root: Dict[str, Any], path: str, value: Any) -> None:
    segments = path.split(".")
    current = root
    for segment in segments[:-1]:
        child = current.get(segment)
        if not isinstance(child, dict):
            child = {}
            current[segment] = child
        current = child
    current[segments[-1]] = value


class _ReadBackMismatch(Exception):
    def __init__(self, paths: List[str]):
        super().__init__(f"read-back lost content at {paths}")
        self.paths = paths


class _SaveAborted(Exception):
    pass


class _CommitGate:
    """
    Decides once whether a save replaces the state file or is abandoned.

    The worker replaces the file under the gate lock; a timed out caller
    takes the same lock, so it either stops the replace or learns that it
    already happened.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.aborted = False
        self.committed = False

    def check(self) -> None:
        if self.aborted:
            raise _SaveAborted()

    def commit(self, replace: Callable[[], None]) -> None:
        with self._lock:
            self.check()
            replace()
            self.committed = True

    def abort(self) -> bool:
        """Returns False when the replace already happened."""
        with self._lock:
            if self.committed:
                return False
            self.aborted = True
            return True


# -----------------------------------------------------------------------------
# Persistence Manager
# -----------------------------------------------------------------------------
class PersistenceManager:
    """
    Saves and loads one PathDocument plus its ChangeLog.
    """

    def __init__(
        self,
        document: PathDocument,
        change_log: ChangeLog,
        state_file: Path,
        ticker: Optional[Ticker] = None,
        codec: Any = None,
        fallback_codec: Any = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        save_interval: float = DEFAULT_SAVE_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        persisted_log_entries: int = DEFAULT_PERSISTED_LOG_ENTRIES,
        on_error: Optional[Callable[[PersistenceWriteError], None]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._document = document
        self._change_log = change_log
        self._state_file = Path(state_file)
        self._ticker = ticker or AsyncioTicker()
        self._codec = codec or JsonCodec()
        self._fallback_codec = fallback_codec or JsonCodec()
        self._debounce_seconds = debounce_seconds
        self._save_interval = save_interval
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._persisted_log_entries = persisted_log_entries
        self._on_error = on_error
        self._clock = clock or now_ms

        self._save_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._temp_counter = itertools.count(1)
        self._debounce_call: Optional[ScheduledCall] = None
        self._interval_call: Optional[ScheduledCall] = None
        self._pending: Set[asyncio.Task] = set()
        self._running = False
        self._saved_update_count = document.update_count

        self.last_save: Optional[SaveResult] = None
        self.last_error: Optional[PersistenceWriteError] = None
        self.save_count = 0

    @property
    def state_file(self) -> Path:
        return self._state_file

    @property
    def dirty(self) -> bool:
        """True when the document changed since the last save or load."""
        return self._document.update_count != self._saved_update_count

    # -------------------------------------------------------------------------
    # Save
    # -------------------------------------------------------------------------

    def save(self, timeout: Optional[float] = None) -> Awaitable[SaveResult]:
        """
        Persist a snapshot of the document and the recent change log.

        The snapshot is taken when save() is called, not when the returned
        awaitable first runs. Awaiting it raises PersistenceWriteError when
        the save failed; the previous file is then unchanged.
        """
        snapshot = self._document.snapshot()
        log_records = self._change_log.to_list(self._persisted_log_entries)
        saved_at = self._clock()
        snapshot.setdefault("metadata", {})["savedAt"] = saved_at
        update_count = int(snapshot["metadata"].get("updateCount", 0))
        payload = {
            "version": STATE_FORMAT_VERSION,
            "savedAt": saved_at,
            "state": snapshot,
            "changeLog": log_records,
        }
        return self._save_payload(payload, update_count, timeout)

    async def _save_payload(
        self,
        payload: Dict[str, Any],
        update_count: int,
        timeout: Optional[float],
    ) -> SaveResult:
        saved_at = payload["savedAt"]
        async with self._get_save_lock():
            gate = _CommitGate()
            worker = asyncio.ensure_future(asyncio.to_thread(self._write_payload, payload, gate))
            timed_out = False
            try:
                result = await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
            except PersistenceWriteError as e:
                self._record_error(e)
                raise

            if timed_out:
                if await asyncio.to_thread(gate.abort):
                    # Hold the lock until the worker has stopped touching the file
                    await self._drain_abandoned(worker)
                    error = PersistenceWriteError(
                        str(self._state_file),
                        f"save timed out after {timeout}s",
                        prior_state_intact=True,
                    )
                    self._record_error(error)
                    raise error
                logger.warning(f"Save passed its {timeout}s timeout after replacing the file")
                result = await worker

        self._document.mark_saved(saved_at)
        self._saved_update_count = max(self._saved_update_count, update_count)
        self.last_save = result
        self.last_error = None
        self.save_count += 1
        logger.info(
            f"State saved to {self._state_file} "
            f"({result.bytes_written} bytes, {result.change_log_entries} log entries)"
        )
        return result

    def _get_save_lock(self) -> asyncio.Lock:
        # One lock per event loop; a manager may outlive the loop that created it
        loop = asyncio.get_running_loop()
        if self._save_lock is None or self._lock_loop is not loop:
            self._save_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._save_lock

    @staticmethod
    async def _drain_abandoned(worker: "asyncio.Future[SaveResult]") -> None:
        try:
            await worker
        except (_SaveAborted, PersistenceWriteError, OSError) as e:
            logger.warning(f"Abandoned save stopped: {e!r}")

    def _write_payload(self, payload: Dict[str, Any], gate: _CommitGate) -> SaveResult:
        """Encode, verify and write. Runs in a worker thread."""
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        prior_state = self._read_prior_state()
        data, codec, preserved = self._encode_checked(payload, prior_state)
        expected_state = payload["state"]
        if preserved:
            expected_state = codec.decode(data)["state"]

        last_error: Optional[str] = None
        for attempt in range(1, self._max_attempts + 1):
            gate.check()
            try:
                self._write_temp_and_replace(data, codec, expected_state, gate)
                return SaveResult(
                    file_path=str(self._state_file),
                    saved_at=payload["savedAt"],
                    bytes_written=len(data),
                    attempts=attempt,
                    codec=codec.name,
                    change_log_entries=len(payload["changeLog"]),
                    preserved_paths=tuple(preserved),
                )
            except _ReadBackMismatch as e:
                last_error = str(e)
                if codec is self._fallback_codec:
                    break
                logger.error(f"Read-back verification failed ({e}); retrying with full serialization")
                codec = self._fallback_codec
                data = codec.encode(payload)
            except OSError as e:
                last_error = str(e)
                logger.warning(f"Save attempt {attempt}/{self._max_attempts} failed: {e}")
                if attempt < self._max_attempts:
                    time.sleep(self._backoff_seconds * (2 ** (attempt - 1)))

        raise PersistenceWriteError(
            str(self._state_file),
            last_error or "unknown error",
            attempts=self._max_attempts,
            prior_state_intact=True,
        )

    def _encode_checked(
        self,
        payload: Dict[str, Any],
        prior_state: Optional[Dict[str, Any]],
    ) -> Tuple[bytes, Any, List[str]]:
        """
        Encode payload and make sure no non-empty container got lost.

        Returns (bytes, codec used, paths whose previous value was kept).
        """
        state = payload["state"]
        data = self._codec.encode(payload)
        shrunk = self._shrunk_after_encoding(state, data, self._codec)
        if not shrunk:
            return data, self._codec, []

        logger.error(f"Serialization emptied {shrunk}; retrying with full JSON serialization")
        codec = self._fallback_codec
        data = codec.encode(payload)
        shrunk = self._shrunk_after_encoding(state, data, codec)
        if not shrunk:
            return data, codec, []

        unrecoverable = [
            path for path in shrunk
            if prior_state is None or not _lookup(prior_state, path)[0]
        ]
        if unrecoverable:
            raise PersistenceWriteError(
                str(self._state_file),
                f"serialization empties non-empty sections with no saved copy to keep: {unrecoverable}",
            )

        spliced = copy.deepcopy(payload)
        for path in shrunk:
            _, prior_value = _lookup(prior_state, path)
            _assign(spliced["state"], path, prior_value)
            logger.error(f"Kept previously saved value for {path} instead of writing a shrunk one")
        data = codec.encode(spliced)
        still_shrunk = self._shrunk_after_encoding(spliced["state"], data, codec)
        if still_shrunk:
            raise PersistenceWriteError(
                str(self._state_file),
                f"serialization keeps emptying {still_shrunk}",
            )
        return data, codec, shrunk

    @staticmethod
    def _shrunk_after_encoding(state: Dict[str, Any], data: bytes, codec: Any) -> List[str]:
        try:
            decoded = codec.decode(data)
        except (ValueError, TypeError) as e:
            logger.error(f"Encoded state does not decode: {e}")
            return sorted(
                key for key, value in state.items()
                if isinstance(value, (dict, list)) and value
            )
        decoded_state = decoded.get("state") if isinstance(decoded, dict) else None
        return find_shrunk_paths(state, decoded_state)

    def _write_temp_and_replace(
        self,
        data: bytes,
        codec: Any,
        expected_state: Dict[str, Any],
        gate: _CommitGate,
    ) -> None:
        temp_file = self._state_file.with_name(
            f"{self._state_file.name}.{os.getpid()}.{next(self._temp_counter)}.tmp"
        )
        try:
            with open(temp_file, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            with open(temp_file, "rb") as f:
                written = f.read()
            try:
                decoded = codec.decode(written)
            except (ValueError, TypeError):
                raise _ReadBackMismatch(["<undecodable>"])
            shrunk = find_shrunk_paths(
                expected_state, decoded.get("state") if isinstance(decoded, dict) else None
            )
            if shrunk:
                raise _ReadBackMismatch(shrunk)

            gate.commit(lambda: os.replace(temp_file, self._state_file))
        finally:
            if temp_file.exists():
                temp_file.unlink()

    def _read_prior_state(self) -> Optional[Dict[str, Any]]:
        if not self._state_file.exists():
            return None
        try:
            with open(self._state_file, "rb") as f:
                payload = JsonCodec().decode(f.read())
        except (OSError, ValueError) as e:
            logger.warning(f"Previous state file unreadable, nothing to fall back on: {e}")
            return None
        state = payload.get("state") if isinstance(payload, dict) else None
        return state if isinstance(state, dict) else None

    def _record_error(self, error: PersistenceWriteError) -> None:
        self.last_error = error
        logger.error(error.message)

    # -------------------------------------------------------------------------
    # Load
    # -------------------------------------------------------------------------

    async def load(self, timeout: Optional[float] = None) -> LoadResult:
        """
        Restore the document and change log from disk.

        Raises PersistenceCorruptError when the file exists but is unreadable.
        The unreadable file is copied aside first.
        """
        payload = await asyncio.wait_for(
            asyncio.to_thread(self._read_payload), timeout=timeout
        )
        if payload is None:
            logger.info(f"No saved state at {self._state_file}, starting empty")
            self._saved_update_count = self._document.update_count
            return LoadResult(outcome=LoadOutcome.EMPTY, file_path=str(self._state_file))

        state, log_records, saved_at = payload
        self._document.restore(state)
        entries = self._change_log.restore(log_records)
        self._saved_update_count = self._document.update_count
        logger.info(f"Loaded state from {self._state_file} ({entries} log entries)")
        return LoadResult(
            outcome=LoadOutcome.LOADED,
            file_path=str(self._state_file),
            saved_at=saved_at,
            change_log_entries=entries,
        )

    def _read_payload(self) -> Optional[Tuple[Dict[str, Any], List[Dict[str, Any]], Optional[int]]]:
        if not self._state_file.exists():
            return None
        try:
            with open(self._state_file, "rb") as f:
                payload = self._codec.decode(f.read())
            if not isinstance(payload, dict):
                raise ValueError("top level is not an object")
            if "state" in payload:
                state = payload["state"]
                log_records = payload.get("changeLog") or []
            else:
                # Older files stored the bare tree
                state = payload
                log_records = []
            if not isinstance(state, dict):
                raise ValueError("'state' is not an object")
            if not isinstance(log_records, list):
                raise ValueError("'changeLog' is not a list")
        except (ValueError, TypeError) as e:
            backup = self._backup_corrupt_file()
            raise PersistenceCorruptError(str(self._state_file), str(e), backup_path=backup)

        saved_at = payload.get("savedAt")
        if saved_at is None:
            saved_at = state.get("metadata", {}).get("savedAt") if isinstance(state.get("metadata"), dict) else None
        return state, log_records, saved_at

    def _backup_corrupt_file(self) -> Optional[str]:
        backup = self._state_file.with_name(f"{self._state_file.name}.corrupted.{self._clock()}")
        try:
            shutil.copy2(self._state_file, backup)
        except OSError as e:
            logger.error(f"Could not back up corrupt state file: {e}")
            return None
        logger.error(f"Corrupt state file copied to {backup}")
        return str(backup)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def request_save(self) -> None:
        """Schedule a save after the debounce delay. Repeated calls coalesce."""
        if self._debounce_call is not None:
            self._debounce_call.cancel()
        self._debounce_call = self._ticker.call_later(self._debounce_seconds, self._fire_debounced)

    def start(self) -> None:
        """Install the periodic dirty check."""
        if self._running:
            logger.warning("Persistence scheduling already running")
            return
        self._running = True
        self._interval_call = self._ticker.call_later(self._save_interval, self._on_interval)
        logger.info(f"Persistence scheduling started (interval {self._save_interval}s)")

    async def stop(self, timeout: Optional[float] = None) -> SaveResult:
        """Cancel timers, drain scheduled saves, then save unconditionally."""
        self._running = False
        if self._interval_call is not None:
            self._interval_call.cancel()
            self._interval_call = None
        if self._debounce_call is not None:
            self._debounce_call.cancel()
            self._debounce_call = None
        await self.wait_idle()
        result = await self.save(timeout=timeout)
        logger.info("Persistence scheduling stopped")
        return result

    async def wait_idle(self) -> None:
        """Wait until every scheduled save has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _fire_debounced(self) -> None:
        self._debounce_call = None
        self._spawn_save()

    def _on_interval(self) -> None:
        if not self._running:
            return
        if self.dirty:
            self._spawn_save()
        self._interval_call = self._ticker.call_later(self._save_interval, self._on_interval)

    def _spawn_save(self) -> None:
        task = asyncio.create_task(self._scheduled_save())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _scheduled_save(self) -> None:
        try:
            await self.save()
        except PersistenceWriteError as e:
            if self._on_error is not None:
                self._on_error(e)
