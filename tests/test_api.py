"""
HTTP API Tests

Test coverage for:
- State read/write and history
- Change log query and revert
- Fix attempt recording, best solution, advisory, report
- Error mapping (400 for bad input, 503 for failed saves)
- Lifecycle (final save on shutdown)
"""

import json
import os

import pytest
from fastapi.testclient import TestClient

from statestore.api import create_app
from statestore.config import StoreConfig
from statestore.scheduling import ManualTicker
from statestore.service import StateService


# -----------------------------------------------------------------------------
# Test Client Setup
# -----------------------------------------------------------------------------
@pytest.fixture
def config(tmp_path):
    return StoreConfig(data_dir=tmp_path, backoff_seconds=0.0, save_timeout=5.0)


@pytest.fixture
def service(config, clock):
    return StateService(config, ticker=ManualTicker(), clock=clock)


@pytest.fixture
def client(service):
    """Client whose app starts the service and saves on shutdown."""
    with TestClient(create_app(service)) as test_client:
        yield test_client


def post_attempt(client, method, result, duration, **extra):
    body = {
        "issue_id": "issue-1",
        "issue_type": "powershell_syntax_error",
        "component": "PowerShell",
        "fix_method": method,
        "result": result,
        "duration_ms": duration,
    }
    body.update(extra)
    return client.post("/learning/attempts", json=body)


# -----------------------------------------------------------------------------
# State Tests
# -----------------------------------------------------------------------------
class TestStateEndpoints:
    """Tests for /state and /changes."""

    def test_write_then_read(self, client):
        response = client.put("/state/game.chips.total", json={"value": 1500})
        assert response.status_code == 200
        assert response.json()["created"] is True

        data = client.get("/state/game.chips.total").json()
        assert data == {"path": "game.chips.total", "exists": True, "value": 1500}

    def test_read_missing_path(self, client):
        data = client.get("/state/issues.none").json()
        assert data["exists"] is False
        assert data["value"] is None

    def test_invalid_path_is_400(self, client):
        response = client.put("/state/issues..broken", json={"value": 1})
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "INVALID_PATH"
        assert body["error"] is True

    def test_history(self, client):
        client.put("/state/issues.current", json={"value": "a"})
        client.put("/state/issues.current", json={"value": "b"})
        data = client.get("/state/issues.current/history").json()
        assert data["count"] == 2
        assert [e["new_value"] for e in data["entries"]] == ["a", "b"]

    def test_changes_and_revert(self, client, clock):
        client.put("/state/game.chips.total", json={"value": 1000})
        clock.advance(100)
        since = clock.now
        client.put("/state/game.chips.total", json={"value": 1})

        changes = client.get("/changes", params={"path": "game", "since": since}).json()
        assert changes["count"] == 1

        result = client.post("/changes/revert", json={"since": since}).json()
        assert result["restored"] == 1
        assert client.get("/state/game.chips.total").json()["value"] == 1000


# -----------------------------------------------------------------------------
# Learning Tests
# -----------------------------------------------------------------------------
class TestLearningEndpoints:
    """Tests for /learning."""

    def record_powershell(self, client):
        message = "Missing closing '}' in statement block"
        post_attempt(client, "search_brackets", "failure", 1_800_000, error_message=message)
        post_attempt(client, "search_brackets", "failure", 2_400_000, error_message=message)
        return post_attempt(client, "check_try_catch", "success", 300_000)

    def test_record_and_best(self, client):
        response = self.record_powershell(client)
        assert response.status_code == 200
        assert response.json()["aggregate"]["success_rate"] == 1.0

        best = client.get("/learning/best/powershell_syntax_error").json()["best"]
        assert best == {"method": "check_try_catch", "success_rate": 1.0, "frequency": 1}

    def test_failed_methods(self, client):
        self.record_powershell(client)
        data = client.get("/learning/failed/powershell_syntax_error").json()
        assert [a["fix_method"] for a in data["failed_methods"]] == ["search_brackets"]

    def test_advisory(self, client):
        self.record_powershell(client)
        data = client.get("/learning/advisory", params={
            "issue_type": "powershell_syntax_error", "component": "PowerShell",
        }).json()
        assert data["warnings"][0]["method"] == "search_brackets"
        assert data["warnings"][0]["time_wasted"] == 4_200_000
        assert data["estimated_time_savings"] == 4_200_000

    def test_advisory_for_unknown_issue(self, client):
        data = client.get("/learning/advisory", params={"issue_type": "never_seen"}).json()
        assert data["warnings"] == []
        assert data["match_type"] == "none"

    def test_invalid_record_is_400(self, client):
        response = post_attempt(client, "search_brackets", "maybe", 10)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_RECORD"
        assert client.get("/learning/report").json()["total_attempts"] == 0

    def test_missing_field_is_422(self, client):
        response = client.post("/learning/attempts", json={"issue_id": "x"})
        assert response.status_code == 422

    def test_generalize_and_report(self, client):
        client.post("/learning/attempts", json={
            "issue_id": "a", "issue_type": "crash at line 10", "fix_method": "restart",
            "result": "failure", "duration_ms": 5,
        })
        client.post("/learning/attempts", json={
            "issue_id": "b", "issue_type": "crash at line 22", "fix_method": "restart",
            "result": "success", "duration_ms": 5,
        })
        result = client.post("/learning/generalize").json()
        assert result["changed"] is True
        report = client.get("/learning/report").json()
        assert report["total_patterns"] == 1

    def test_query(self, client):
        self.record_powershell(client)
        data = client.post("/query", json={"question": "best solution for powershell_syntax_error"}).json()
        assert data["intent"] == "best_solution"
        assert data["answer"]["method"] == "check_try_catch"


# -----------------------------------------------------------------------------
# Persistence Tests
# -----------------------------------------------------------------------------
class TestPersistenceEndpoints:
    """Tests for /persistence, /health and the shutdown save."""

    def test_flush(self, client, config):
        client.put("/state/fixes.last", json={"value": "restart"})
        response = client.post("/persistence/flush")
        assert response.status_code == 200
        saved = json.loads(config.state_path.read_text())
        assert saved["state"]["fixes"]["last"] == "restart"

    def test_failed_flush_is_503(self, service, config, monkeypatch):
        def failing_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", failing_replace)
        with TestClient(create_app(service, manage_lifecycle=False)) as client:
            client.put("/state/fixes.last", json={"value": "restart"})
            response = client.post("/persistence/flush", json={"timeout": 5})
        assert response.status_code == 503
        body = response.json()
        assert body["code"] == "SAVE_FAILED"
        assert body["details"]["prior_state_intact"] is True
        assert not config.state_path.exists()

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["running"] is True
        assert data["load"]["outcome"] == "empty"

    def test_shutdown_saves(self, service, config):
        with TestClient(create_app(service)) as client:
            client.put("/state/game.round", json={"value": 3})
        saved = json.loads(config.state_path.read_text())
        assert saved["state"]["game"]["round"] == 3
        assert not service.running
