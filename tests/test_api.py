import base64
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

import main
from nlbc import db
from nlbc.ledger import Ledger, LoadBalancer


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def api(monkeypatch):
    ledger = Ledger([LoadBalancer("lb1", "lb1.example.com"), LoadBalancer("lb2", "lb2.example.com")], 9000, 9001)
    monkeypatch.setattr(main, "ledger", ledger)
    monkeypatch.setattr(main, "settings", replace(main.settings, admin_password=None))
    # No context manager: startup (and the controller threads) must not run.
    return TestClient(main.app), ledger


def test_health_reports_starting_without_ledger(monkeypatch):
    monkeypatch.setattr(main, "ledger", None)
    r = TestClient(main.app).get("/health")
    assert r.json() == {"status": "starting"}


def test_pool_and_allocations(api):
    client, ledger = api
    ledger.reserve("lb1", 9001, "ns/a", "L1", "G1")

    pool = client.get("/pool").json()
    assert [lb["name"] for lb in pool] == ["lb1", "lb2"]
    assert pool[0]["free"] == 1
    assert pool[0]["occupied"] == [{"port": 9001, "service": "ns/a"}]
    assert pool[1]["free"] == 2

    allocations = client.get("/allocations").json()
    assert allocations == [
        {
            "service": "ns/a",
            "load_balancer": "lb1",
            "host": "lb1.example.com",
            "port": 9001,
            "listener_handle": "L1",
            "backend_group_handle": "G1",
        }
    ]


def test_events_and_dangling(api):
    client, _ = api
    db.log_event("INFO", "first", service_name="ns/a")
    db.log_event("WARN", "second", service_name="ns/b")
    leak = db.record_dangling("leak", "ns/a", "L1", "G1", "rollback failed")
    db.record_dangling("orphan", "ns/b", "L2", "G2", "listener-port")
    db.mark_dangling_collected(leak.id)

    events = client.get("/events", params={"limit": 5}).json()
    assert [e["message"] for e in events] == ["second", "first"]
    assert [e["message"] for e in client.get("/events", params={"service": "ns/a"}).json()] == ["first"]

    pending = client.get("/dangling").json()
    assert [d["listener_handle"] for d in pending] == ["L2"]
    every_leak = client.get("/dangling", params={"kind": "leak", "include_collected": "true"}).json()
    assert [(d["listener_handle"], d["status"]) for d in every_leak] == [("L1", "collected")]
    assert client.get("/dangling", params={"kind": "bogus"}).status_code == 422


def test_status_endpoints_require_basic_auth_when_configured(api, monkeypatch):
    client, _ = api
    monkeypatch.setattr(main, "settings", replace(main.settings, admin_user="ops", admin_password="s3cret"))

    assert client.get("/allocations").status_code == 401
    assert client.get("/allocations", headers=_basic_auth("ops", "wrong")).status_code == 401
    assert client.get("/allocations", headers=_basic_auth("ops", "s3cret")).status_code == 200
    assert client.get("/health").status_code == 200


def test_record_dangling_does_not_duplicate_pending_rows():
    first = db.record_dangling("orphan", "ns/a", "L1", "G1", "listener-port")
    second = db.record_dangling("orphan", "ns/a", "L1", "G1", "listener-port")
    assert first.id == second.id
    assert len(db.list_dangling()) == 1
