"""
Tests for the HTTP trigger and monitoring routes.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import seed_consensus_population

from notes_consensus.app import app
from notes_consensus.config import get_settings
from notes_consensus.database import get_db
from notes_consensus.routes.cron import get_label_publisher

TRIGGER = "/api/cron/score-community-notes"


@pytest.fixture
def client(db_session, settings, publisher):
    """TestClient wired to the test DB, settings and fake publisher. Lifespan is not run."""
    fast_settings = settings.model_copy(update={"label_op_delay_ms": 0})

    def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_settings] = lambda: fast_settings
    app.dependency_overrides[get_label_publisher] = lambda: publisher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_missing_secret_is_server_error(client, settings):
    app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"cron_secret": None})

    r = client.get(TRIGGER, headers={"Authorization": "Bearer test-secret"})

    assert r.status_code == 500
    assert r.json() == {"error": "Server configuration error"}


@pytest.mark.parametrize("header", [None, "Bearer wrong", "test-secret", "Basic test-secret"])
def test_bad_token_is_unauthorized(client, publisher, header):
    headers = {"Authorization": header} if header else {}

    r = client.get(TRIGGER, headers=headers)

    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}
    assert publisher.calls == 0


def test_trigger_runs_scoring(client, db_session, publisher):
    seed_consensus_population(db_session)

    r = client.post(TRIGGER, headers={"Authorization": "Bearer test-secret"})

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["scored"] == 5
    assert body["ratings"] == 25
    assert body["labels"]["published"] == 1
    assert body["labels"]["negated"] == 4
    assert body["disputes"]["pending"] == 0
    assert body["scored_at"] is not None
    assert publisher.calls == 5


def test_trigger_reports_run_failure(client, monkeypatch):
    from notes_consensus.exceptions import ScoringRunError
    from notes_consensus.routes import cron

    def fail(self):
        raise ScoringRunError("loading ratings", "database is locked")

    monkeypatch.setattr(cron.ScoringService, "run_scoring", fail)

    r = client.get(TRIGGER, headers={"Authorization": "Bearer test-secret"})

    assert r.status_code == 500
    assert r.json() == {"error": "An error occurred"}


def test_monitoring_routes(client, db_session):
    assert client.get("/api/scoring/last-run").json() == {"message": "No scoring runs yet"}

    seed_consensus_population(db_session)
    client.get(TRIGGER, headers={"Authorization": "Bearer test-secret"})

    last_run = client.get("/api/scoring/last-run").json()
    assert last_run["success"] is True
    assert last_run["notes_scored"] == 5

    assert len(client.get("/api/scoring/status").json()["recent_runs"]) == 1

    health = client.get("/api/scoring/health").json()
    assert health["status"] == "healthy"
    assert health["notes_count"] == 5
    assert health["ratings_count"] == 25


def test_root(client):
    assert client.get("/health").json()["status"] == "ok"
    assert client.get("/").json()["endpoints"]["trigger"] == TRIGGER
