"""
PersistenceManager Tests

Test Categories:
1. Save / load round trip
2. No silent shrink
3. Write failures and atomicity
4. Load outcomes (empty, corrupt)
5. Scheduling with virtual time
"""

import asyncio
import json
import os

import pytest

from statestore.change_log import ChangeLog
from statestore.document import PathDocument
from statestore.errors import PersistenceCorruptError, PersistenceWriteError
from statestore.persistence import (
    JsonCodec,
    LoadOutcome,
    PersistenceManager,
    _CommitGate,
    _SaveAborted,
    find_shrunk_paths,
)
from statestore.scheduling import ManualTicker
from tests.conftest import async_test


class EmptyingCodec(JsonCodec):
    """Reproduces the 'arrays serialize empty' bug for one path."""

    name = "emptying"

    def __init__(self, path="learning.knowledge", min_length=1):
        self.path = path.split(".")
        self.min_length = min_length

    def encode(self, payload):
        payload = json.loads(json.dumps(payload))
        node = payload["state"]
        for segment in self.path[:-1]:
            node = node.get(segment, {})
        leaf = self.path[-1]
        if isinstance(node.get(leaf), list) and len(node[leaf]) >= self.min_length:
            node[leaf] = []
        return json.dumps(payload).encode("utf-8")


def read_state(state_file):
    return json.loads(state_file.read_text())


def fresh_manager(state_file, clock, **kwargs):
    document = PathDocument(clock=clock)
    change_log = ChangeLog(clock=clock)
    change_log.attach(document)
    manager = PersistenceManager(
        document, change_log, state_file,
        ticker=ManualTicker(), backoff_seconds=0.0, clock=clock, **kwargs
    )
    return document, change_log, manager


# =============================================================================
# 1. Save / Load Round Trip
# =============================================================================

class TestRoundTrip:

    @async_test
    async def test_restart_restores_value(self, document, persistence, state_file, clock):
        document.set("game.chips.total", 1000)
        await persistence.save()

        restarted_doc, restarted_log, restarted = fresh_manager(state_file, clock)
        result = await restarted.load()
        assert result.outcome == LoadOutcome.LOADED
        assert restarted_doc.get("game.chips.total") == 1000
        assert len(restarted_log) == 1

    @async_test
    async def test_file_layout(self, document, persistence, state_file, clock):
        document.set("issues.open", ["a"])
        result = await persistence.save()
        data = read_state(state_file)
        assert set(data) == {"version", "savedAt", "state", "changeLog"}
        assert data["savedAt"] == clock.now == result.saved_at
        assert data["state"]["metadata"]["savedAt"] == clock.now
        assert document.get("metadata.savedAt") == clock.now

    @async_test
    async def test_arrays_round_trip(self, document, persistence, state_file, clock):
        knowledge = [{"id": i, "tags": ["x", "y"], "nested": [[1], []]} for i in range(50)]
        document.set("learning.knowledge", knowledge)
        document.set("issues.empty", [])
        await persistence.save()

        restarted_doc, _, restarted = fresh_manager(state_file, clock)
        await restarted.load()
        assert restarted_doc.get("learning.knowledge") == knowledge
        assert restarted_doc.get("issues.empty") == []

    @async_test
    async def test_snapshot_taken_at_call_time(self, document, persistence, state_file):
        document.set("game.chips.total", 1)
        pending = asyncio.ensure_future(persistence.save())
        document.set("game.chips.total", 2)
        await pending
        assert read_state(state_file)["state"]["game"]["chips"]["total"] == 1

    @async_test
    async def test_persisted_log_entries_bounded(self, document, change_log, state_file, clock):
        manager = PersistenceManager(
            document, change_log, state_file,
            ticker=ManualTicker(), persisted_log_entries=5, clock=clock,
        )
        for i in range(20):
            document.set("game.round", i)
        result = await manager.save()
        assert result.change_log_entries == 5
        assert len(read_state(state_file)["changeLog"]) == 5


# =============================================================================
# 2. No Silent Shrink
# =============================================================================

class TestNoSilentShrink:

    def test_find_shrunk_paths(self):
        expected = {"a": [1, 2], "b": {"c": {"d": 1}}, "e": [], "f": 1}
        assert find_shrunk_paths(expected, {"a": [], "b": {"c": {}}, "e": [], "f": 1}) == ["a", "b.c"]
        assert find_shrunk_paths(expected, {"a": [1], "b": {"c": {"d": 2}}}) == ["a"]
        assert find_shrunk_paths(expected, expected) == []

    @async_test
    async def test_buggy_codec_falls_back_to_full_json(self, document, change_log, state_file, clock):
        entries = [{"id": "entry1"}, {"id": "entry2"}]
        manager = PersistenceManager(
            document, change_log, state_file,
            ticker=ManualTicker(), codec=EmptyingCodec(), clock=clock,
        )
        document.set("learning.knowledge", entries)
        result = await manager.save()
        assert read_state(state_file)["state"]["learning"]["knowledge"] == entries
        assert result.codec == "json"

    @async_test
    async def test_prior_value_kept_when_every_codec_shrinks(self, document, change_log, state_file, clock):
        entries = [{"id": "entry1"}, {"id": "entry2"}]
        document.set("learning.knowledge", entries)
        good = PersistenceManager(document, change_log, state_file, ticker=ManualTicker(), clock=clock)
        await good.save()

        # Bug only strikes once the array grows past two entries
        buggy = EmptyingCodec(min_length=3)
        manager = PersistenceManager(
            document, change_log, state_file,
            ticker=ManualTicker(), codec=buggy, fallback_codec=buggy, clock=clock,
        )
        document.set("learning.knowledge", entries + [{"id": "entry3"}])
        document.set("game.chips.total", 10)
        result = await manager.save()

        saved = read_state(state_file)["state"]
        assert saved["learning"]["knowledge"] == entries
        assert saved["game"]["chips"]["total"] == 10
        assert result.preserved_paths == ("learning.knowledge",)

    @async_test
    async def test_shrink_without_prior_copy_fails_loudly(self, document, change_log, state_file, clock):
        buggy = EmptyingCodec()
        manager = PersistenceManager(
            document, change_log, state_file,
            ticker=ManualTicker(), codec=buggy, fallback_codec=buggy, clock=clock,
        )
        document.set("learning.knowledge", [{"id": "entry1"}])
        with pytest.raises(PersistenceWriteError) as exc_info:
            await manager.save()
        assert exc_info.value.prior_state_intact is True
        assert not state_file.exists()
        assert manager.last_error is exc_info.value

    @async_test
    async def test_never_writes_empty_over_saved_array(self, document, change_log, state_file, clock):
        entries = [{"id": "entry1"}, {"id": "entry2"}]
        document.set("learning.knowledge", entries)
        await PersistenceManager(document, change_log, state_file, ticker=ManualTicker(), clock=clock).save()

        buggy = EmptyingCodec()
        manager = PersistenceManager(
            document, change_log, state_file,
            ticker=ManualTicker(), codec=buggy, fallback_codec=buggy, clock=clock,
        )
        try:
            await manager.save()
        except PersistenceWriteError:
            pass
        assert read_state(state_file)["state"]["learning"]["knowledge"] == entries


# =============================================================================
# 3. Write Failures and Atomicity
# =============================================================================

class TestWriteFailures:

    @async_test
    async def test_retries_then_raises_with_prior_intact(self, document, persistence, state_file, monkeypatch):
        document.set("game.chips.total", 1)
        await persistence.save()
        before = state_file.read_bytes()

        calls = []

        def failing_replace(src, dst):
            calls.append(src)
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", failing_replace)
        document.set("game.chips.total", 2)
        with pytest.raises(PersistenceWriteError) as exc_info:
            await persistence.save()

        assert len(calls) == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.prior_state_intact is True
        assert state_file.read_bytes() == before
        assert [p.name for p in state_file.parent.iterdir()] == [state_file.name]

    @async_test
    async def test_transient_error_recovers(self, document, persistence, state_file, monkeypatch):
        real_replace = os.replace
        failures = [OSError("busy")]

        def flaky_replace(src, dst):
            if failures:
                raise failures.pop()
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", flaky_replace)
        document.set("game.chips.total", 7)
        result = await persistence.save()
        assert result.attempts == 2
        assert read_state(state_file)["state"]["game"]["chips"]["total"] == 7

    @async_test
    async def test_timed_out_save_leaves_previous_file(self, document, change_log, state_file, clock):
        document.set("game.chips.total", 1)
        manager = PersistenceManager(document, change_log, state_file, ticker=ManualTicker(), clock=clock)
        await manager.save()
        before = state_file.read_bytes()

        class SlowCodec(JsonCodec):
            def encode(self, payload):
                import time
                time.sleep(0.3)
                return super().encode(payload)

        slow = PersistenceManager(
            document, change_log, state_file,
            ticker=ManualTicker(), codec=SlowCodec(), clock=clock,
        )
        document.set("game.chips.total", 2)
        with pytest.raises(PersistenceWriteError) as exc_info:
            await slow.save(timeout=0.05)
        assert exc_info.value.prior_state_intact
        assert state_file.read_bytes() == before
        assert not list(state_file.parent.glob("*.tmp"))

    @async_test
    async def test_timeout_during_replace_reports_what_is_on_disk(
        self, document, persistence, state_file, monkeypatch,
    ):
        document.set("game.chips.total", 1)
        await persistence.save()
        real_replace = os.replace

        def slow_replace(src, dst):
            import time
            time.sleep(0.3)
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", slow_replace)
        document.set("game.chips.total", 2)
        try:
            result = await persistence.save(timeout=0.1)
        except PersistenceWriteError:
            assert read_state(state_file)["state"]["game"]["chips"]["total"] == 1
            assert persistence.dirty
        else:
            assert result.file_path == str(state_file)
            assert read_state(state_file)["state"]["game"]["chips"]["total"] == 2
            assert persistence.last_error is None
            assert not persistence.dirty

        monkeypatch.setattr(os, "replace", real_replace)
        document.set("game.chips.total", 3)
        await persistence.save(timeout=5.0)
        assert read_state(state_file)["state"]["game"]["chips"]["total"] == 3
        assert not list(state_file.parent.glob("*.tmp"))

    def test_commit_gate_decides_once(self):
        committed = _CommitGate()
        committed.commit(lambda: None)
        assert committed.abort() is False

        abandoned = _CommitGate()
        assert abandoned.abort() is True
        replaced = []
        with pytest.raises(_SaveAborted):
            abandoned.commit(lambda: replaced.append(True))
        assert replaced == []

    def test_manager_reused_across_event_loops(self, document, persistence, state_file):
        document.set("game.round", 1)
        asyncio.run(persistence.save())
        document.set("game.round", 2)
        asyncio.run(persistence.save())
        assert read_state(state_file)["state"]["game"]["round"] == 2
        assert persistence.save_count == 2

    @async_test
    async def test_saves_are_serialized(self, document, persistence, state_file):
        document.set("game.round", 1)
        first = asyncio.ensure_future(persistence.save())
        document.set("game.round", 2)
        second = asyncio.ensure_future(persistence.save())
        await asyncio.gather(first, second)
        assert read_state(state_file)["state"]["game"]["round"] == 2
        assert persistence.save_count == 2


# =============================================================================
# 4. Load Outcomes
# =============================================================================

class TestLoad:

    @async_test
    async def test_missing_file_is_empty(self, persistence, document):
        result = await persistence.load()
        assert result.outcome == LoadOutcome.EMPTY
        assert document.get("game") is None

    @async_test
    async def test_corrupt_file_raises_and_is_backed_up(self, persistence, state_file):
        state_file.write_text("{ this is not json")
        with pytest.raises(PersistenceCorruptError) as exc_info:
            await persistence.load()
        backup = exc_info.value.backup_path
        assert backup is not None
        assert ".corrupted." in backup
        assert open(backup).read() == "{ this is not json"

    @async_test
    async def test_wrong_shape_is_corrupt(self, persistence, state_file):
        state_file.write_text(json.dumps({"state": [1, 2, 3]}))
        with pytest.raises(PersistenceCorruptError):
            await persistence.load()

    @async_test
    async def test_bare_tree_is_accepted(self, persistence, state_file, document):
        state_file.write_text(json.dumps({"game": {"chips": {"total": 3}}}))
        result = await persistence.load()
        assert result.outcome == LoadOutcome.LOADED
        assert document.get("game.chips.total") == 3

    @async_test
    async def test_load_clears_dirty_flag(self, document, persistence):
        document.set("game.round", 1)
        await persistence.save()
        document.set("game.round", 2)
        assert persistence.dirty is True
        await persistence.load()
        assert persistence.dirty is False
        assert document.get("game.round") == 1


# =============================================================================
# 5. Scheduling
# =============================================================================

class TestScheduling:

    @async_test
    async def test_request_save_is_debounced(self, document, persistence, ticker, state_file):
        document.set("game.round", 1)
        persistence.request_save()
        ticker.advance(0.5)
        persistence.request_save()
        ticker.advance(0.5)
        await persistence.wait_idle()
        assert not state_file.exists()

        ticker.advance(0.5)
        await persistence.wait_idle()
        assert state_file.exists()
        assert persistence.save_count == 1

    @async_test
    async def test_periodic_save_only_when_dirty(self, document, persistence, ticker):
        persistence.start()
        ticker.advance(30)
        await persistence.wait_idle()
        assert persistence.save_count == 0

        document.set("game.round", 1)
        ticker.advance(30)
        await persistence.wait_idle()
        assert persistence.save_count == 1

        ticker.advance(30)
        await persistence.wait_idle()
        assert persistence.save_count == 1
        await persistence.stop()

    @async_test
    async def test_stop_saves_unconditionally_and_cancels_timers(self, persistence, ticker, state_file):
        persistence.start()
        persistence.request_save()
        result = await persistence.stop()
        assert state_file.exists()
        assert result.saved_at is not None
        assert ticker.pending == 0

    @async_test
    async def test_scheduled_failure_is_reported(self, document, change_log, state_file, ticker, clock, monkeypatch):
        errors = []
        manager = PersistenceManager(
            document, change_log, state_file,
            ticker=ticker, backoff_seconds=0.0, on_error=errors.append, clock=clock,
        )

        def failing_replace(src, dst):
            raise OSError("read-only file system")

        monkeypatch.setattr(os, "replace", failing_replace)
        document.set("game.round", 1)
        manager.request_save()
        ticker.advance(1)
        await manager.wait_idle()
        assert len(errors) == 1
        assert manager.last_error is errors[0]
