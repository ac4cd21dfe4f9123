"""
ChangeLog Tests

Test Categories:
1. Importance policy
2. Value storage (full, summarized, placeholder)
3. Bounds and eviction
4. Query and ordering
5. Archive
6. Rollback
"""

import json

import pytest

from statestore.change_log import (
    ChangeLog,
    ChangeLogEntry,
    Importance,
    ImportancePolicy,
)
from statestore.document import PathDocument


class Unserializable:
    pass


# =============================================================================
# 1. Importance Policy
# =============================================================================

class TestImportancePolicy:

    def test_defaults(self):
        policy = ImportancePolicy()
        assert policy.classify("issues.current") == Importance.CRITICAL
        assert policy.classify("learning.fixAttempts.issue-1") == Importance.CRITICAL
        assert policy.classify("learning.patterns") == Importance.AUXILIARY
        assert policy.classify("learning.misdiagnosisPatterns") == Importance.AUXILIARY
        assert policy.classify("learning.generalizationRules") == Importance.CRITICAL
        assert policy.classify("game.chips.total") == Importance.CRITICAL
        assert policy.classify("system.health.cpu") == Importance.SKIP
        assert policy.classify("metadata.lastUpdate") == Importance.SKIP
        assert policy.classify("ui.theme") == Importance.AUXILIARY

    def test_longest_prefix_wins(self):
        policy = ImportancePolicy(
            critical_prefixes=("system.alerts",),
            skip_prefixes=("system",),
        )
        assert policy.classify("system.alerts.disk") == Importance.CRITICAL
        assert policy.classify("system.other") == Importance.SKIP

    def test_prefix_matches_whole_segments(self):
        policy = ImportancePolicy()
        assert policy.classify("issuesArchive") == Importance.AUXILIARY

    def test_from_dict(self):
        policy = ImportancePolicy.from_dict({
            "critical": ["orders"],
            "skip": ["noise"],
            "default": "skip",
        })
        assert policy.classify("orders.1") == Importance.CRITICAL
        assert policy.classify("issues.1") == Importance.SKIP


# =============================================================================
# 2. Value Storage
# =============================================================================

class TestValueStorage:

    def test_critical_keeps_full_values(self, clock):
        log = ChangeLog(clock=clock)
        entry = log.record("issues.a", {"x": 1}, {"x": 2})
        assert entry.old_value == {"x": 1}
        assert entry.new_value == {"x": 2}
        assert entry.full_values is True
        assert entry.importance == Importance.CRITICAL.value

    def test_auxiliary_summarizes_containers(self, clock):
        log = ChangeLog(clock=clock)
        payload = {"items": list(range(500))}
        entry = log.record("ui.cache", None, payload)
        assert entry.full_values is False
        assert set(entry.new_value) == {"digest", "preview", "size"}
        assert len(entry.new_value["preview"]) <= ImportancePolicy().preview_chars
        assert entry.new_value["size"] == len(json.dumps(payload, sort_keys=True))

    def test_auxiliary_keeps_short_scalars(self, clock):
        log = ChangeLog(clock=clock)
        entry = log.record("ui.theme", "light", "dark")
        assert entry.new_value == "dark"
        assert entry.full_values is True

    def test_skipped_path_not_logged(self, clock):
        log = ChangeLog(clock=clock)
        assert log.record("system.health.cpu", 1, 2) is None
        assert len(log) == 0

    def test_unserializable_value_gets_placeholder(self, clock):
        log = ChangeLog(clock=clock)
        entry = log.record("issues.bad", None, Unserializable())
        assert entry.new_value["unserializable"] is True
        assert entry.full_values is False
        assert log.serialization_failures == 1

    def test_bad_entry_does_not_stop_logging(self, clock):
        log = ChangeLog(clock=clock)
        log.record("issues.bad", None, Unserializable())
        entry = log.record("issues.good", None, 1)
        assert entry.new_value == 1
        assert len(log) == 2

    def test_attached_log_records_document_changes(self, document, change_log):
        document.set("issues.a", 1)
        document.set("system.health.cpu", 50)
        document.delete("issues.a")
        entries = change_log.query()
        assert [(e.path, e.created) for e in entries] == [("issues.a", True), ("issues.a", False)]
        assert entries[1].metadata.get("deleted") is True


# =============================================================================
# 3. Bounds and Eviction
# =============================================================================

class TestBounds:

    def test_record_10005_keeps_most_recent_10000(self, clock):
        log = ChangeLog(max_entries=10000, clock=clock)
        for i in range(10005):
            log.record("issues.counter", i, i + 1)
        entries = log.query()
        assert len(entries) == 10000
        assert entries[0].old_value == 5
        assert entries[-1].old_value == 10004
        assert log.evicted_count == 5

    def test_document_sets_beyond_capacity(self, clock):
        document = PathDocument(clock=clock)
        log = ChangeLog(max_entries=10, clock=clock)
        log.attach(document)
        for i in range(25):
            clock.advance(1)
            document.set("game.round", i)
        entries = log.query()
        assert len(entries) == 10
        assert [e.new_value for e in entries] == list(range(15, 25))

    def test_trim_to_smaller_size(self, clock):
        log = ChangeLog(max_entries=10, clock=clock)
        for i in range(8):
            log.record("issues.x", i, i + 1)
        assert log.trim(3) == 5
        assert [e.old_value for e in log.query()] == [5, 6, 7]

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ChangeLog(max_entries=0)


# =============================================================================
# 4. Query and Ordering
# =============================================================================

class TestQuery:

    def test_seq_strictly_increasing_with_same_timestamp(self, clock):
        log = ChangeLog(clock=clock)
        first = log.record("issues.a", None, 1)
        second = log.record("issues.a", 1, 2)
        assert first.timestamp == second.timestamp
        assert second.seq > first.seq

    def test_timestamp_never_goes_backwards(self, clock):
        log = ChangeLog(clock=clock)
        first = log.record("issues.a", None, 1)
        clock.advance(-1000)
        second = log.record("issues.a", 1, 2)
        assert second.timestamp >= first.timestamp

    def test_query_by_path_prefix_and_time(self, clock):
        log = ChangeLog(clock=clock)
        log.record("issues.a", None, 1)
        clock.advance(100)
        cutoff = clock.now
        log.record("issues.a.b", None, 2)
        log.record("fixes.c", None, 3)
        log.record("issuesX", None, 4)
        assert [e.path for e in log.query(path="issues.a")] == ["issues.a", "issues.a.b"]
        assert [e.path for e in log.query(since=cutoff)] == ["issues.a.b", "fixes.c", "issuesX"]
        assert [e.path for e in log.query(limit=2)] == ["fixes.c", "issuesX"]

    def test_history_window(self, clock):
        log = ChangeLog(clock=clock)
        log.record("game.chips", 0, 1)
        clock.advance(10_000)
        log.record("game.chips", 1, 2)
        assert len(log.history("game.chips")) == 2
        assert [e.new_value for e in log.history("game.chips", window_ms=5_000)] == [2]

    def test_to_list_and_from_list(self, clock):
        log = ChangeLog(clock=clock)
        for i in range(5):
            log.record("issues.x", i, i + 1)
        records = log.to_list(limit=3)
        restored = ChangeLog.from_list(records, clock=clock)
        assert [e.to_dict() for e in restored.query()] == records
        # New entries continue the sequence
        assert restored.record("issues.x", 5, 6).seq == 6

    def test_restore_skips_malformed_records(self, clock):
        log = ChangeLog(clock=clock)
        kept = log.restore([{"path": "missing-fields"}, ChangeLogEntry(
            seq=1, timestamp=1, path="issues.a", old_value=None, new_value=1,
            importance="critical",
        ).to_dict()])
        assert kept == 1


# =============================================================================
# 5. Archive
# =============================================================================

class TestArchive:

    def test_evicted_entries_are_archived(self, tmp_path, clock):
        archive = tmp_path / "archive.jsonl"
        log = ChangeLog(max_entries=3, archive_file=archive, clock=clock)
        for i in range(5):
            log.record("issues.x", i, i + 1)
        lines = archive.read_text().strip().splitlines()
        assert len(lines) == 2
        archived = log.load_archived()
        assert [e.old_value for e in archived] == [0, 1]

    def test_load_archived_skips_malformed_lines(self, tmp_path, clock):
        archive = tmp_path / "archive.jsonl"
        log = ChangeLog(max_entries=1, archive_file=archive, clock=clock)
        log.record("issues.x", 0, 1)
        log.record("issues.y", 1, 2)
        with open(archive, "a") as f:
            f.write("{not json\n")
        assert [e.path for e in log.load_archived(path="issues.x")] == ["issues.x"]

    def test_no_archive_configured(self, clock):
        log = ChangeLog(max_entries=1, clock=clock)
        log.record("issues.x", 0, 1)
        log.record("issues.x", 1, 2)
        assert log.load_archived() == []


# =============================================================================
# 6. Rollback
# =============================================================================

class TestRollback:

    def test_revert_restores_values_newest_first(self, document, change_log, clock):
        document.set("game.chips.total", 1000)
        clock.advance(1000)
        since = clock.now
        document.set("game.chips.total", 900)
        document.set("game.chips.total", 800)
        result = change_log.revert_since(document, since)
        assert result.restored == 2
        assert document.get("game.chips.total") == 1000

    def test_revert_deletes_created_paths(self, document, change_log, clock):
        since = clock.now
        document.set("issues.new", {"id": 1})
        change_log.revert_since(document, since)
        assert document.exists("issues.new") is False

    def test_revert_skips_summarized_entries(self, document, change_log, clock):
        since = clock.now
        document.set("ui.cache", {"big": list(range(100))})
        result = change_log.revert_since(document, since)
        assert result.restored == 0
        assert result.skipped == ("ui.cache",)

    def test_reverts_are_logged(self, document, change_log, clock):
        since = clock.now
        document.set("issues.a", 1)
        change_log.revert_since(document, since)
        last = change_log.query()[-1]
        assert last.metadata["source"] == "rollback"

    def test_revert_limited_to_path(self, document, change_log, clock):
        since = clock.now
        document.set("issues.a", 1)
        document.set("fixes.b", 2)
        change_log.revert_since(document, since, path="fixes")
        assert document.get("issues.a") == 1
        assert document.exists("fixes.b") is False
