"""Tests for the HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient

from roomsync.server import SyncRuntime, create_app

from conftest import OSTROM, SATOSHI


@pytest.fixture
def client(settings, service):
    app = create_app(settings, service=service)
    with TestClient(app) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_status_before_first_run(client):
    response = client.get("/status")
    assert response.status_code == 200
    assert response.json()["last_report"] is None


def test_trigger_known_room(client):
    response = client.post("/sync", params={"room": "ostrom", "force": "true"})
    assert response.status_code == 202
    assert response.json() == {"accepted": True, "room": "ostrom", "force": True}


def test_trigger_unknown_room(client):
    response = client.post("/sync", params={"room": "attic"})
    assert response.status_code == 400


def test_requests_are_merged(settings, service):
    runtime = SyncRuntime(settings, service=service)
    runtime._requests = [([OSTROM], False), ([SATOSHI], True), ([OSTROM], False)]

    rooms, force = runtime._take_requests()

    assert sorted(r.room_id for r in rooms) == ["ostrom", "satoshi"]
    assert force is True
    assert runtime._take_requests() == (None, False)


def test_full_run_request_wins(settings, service):
    runtime = SyncRuntime(settings, service=service)
    runtime._requests = [([OSTROM], False), (None, False)]

    assert runtime._take_requests() == (None, False)
