"""Tests for the health / metrics endpoints."""

import pytest
from fastapi.testclient import TestClient

from draftscout import health

from conftest import PUUID, REGION


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setattr(health, "store", store)
    return TestClient(health.app)


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["service"] == "draftscout"

    def test_liveness(self, client):
        assert client.get("/liveness").text == "Alive"

    def test_readiness(self, client):
        assert client.get("/readiness").status_code == 200

    def test_metrics_reports_cache_size(self, client, store, make_record):
        store.upsert([make_record(1), make_record(2)])
        store.save_meta(PUUID, "Faker", "KR1", REGION)

        body = client.get("/metrics").json()

        assert body["cached_matches"] == 2
        assert body["cached_players"] == 1
        assert body["uptime_seconds"] >= 0
