import copy
from dataclasses import replace

import pytest

from nlbc import db
from nlbc.gateway import (
    BACKEND_GROUP,
    BACKEND_PORT,
    LISTENER_MISSING,
    LISTENER_PORT,
    LOAD_BALANCER,
    ListenerRef,
    Mismatch,
    ProviderError,
)
from nlbc.kube import ServiceNotFound, ServiceRecord
from nlbc.ledger import Ledger, LoadBalancer
from nlbc.reconciler import Reconciler

MARKER = "github.com/chinmayrelkar/service"


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite event log."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "nlbc.db")))
    db.init_db()


class FakeProvider:
    """In-memory load balancer provider that records every call."""

    def __init__(self):
        self.listeners = {}  # handle -> {"lb", "port", "group"}
        self.groups = {}  # handle -> backend port
        self.calls = []
        self.fail = {}  # method -> number of calls that should fail
        self._seq = 0

    def _maybe_fail(self, method):
        if self.fail.get(method, 0) > 0:
            self.fail[method] -= 1
            raise ProviderError(f"{method}: throttled")

    def create_listener(self, load_balancer, port, backend_port, service):
        self.calls.append(("create", load_balancer, port, backend_port, service))
        self._maybe_fail("create")
        group = next((h for h, p in self.groups.items() if p == backend_port), None)
        if group is None:
            group = f"tg-{backend_port}"
            self.groups[group] = backend_port
        self._seq += 1
        handle = f"listener-{self._seq}"
        self.listeners[handle] = {"lb": load_balancer, "port": port, "group": group}
        return ListenerRef(handle, group)

    def validate_listener(self, listener_handle, backend_group_handle, load_balancer, external_port, backend_port):
        self.calls.append(("validate", listener_handle))
        self._maybe_fail("validate")
        live = self.listeners.get(listener_handle)
        if live is None:
            return Mismatch(LISTENER_MISSING, listener_handle)
        if live["port"] != external_port:
            return Mismatch(LISTENER_PORT, f"{live['port']} != {external_port}")
        if live["lb"] != load_balancer:
            return Mismatch(LOAD_BALANCER, live["lb"])
        if live["group"] != backend_group_handle:
            return Mismatch(BACKEND_GROUP, live["group"])
        if self.groups.get(live["group"]) != backend_port:
            return Mismatch(BACKEND_PORT, str(self.groups.get(live["group"])))
        return None

    def delete_listener(self, listener_handle, backend_group_handle):
        self.calls.append(("delete", listener_handle, backend_group_handle))
        self._maybe_fail("delete")
        self.listeners.pop(listener_handle, None)
        if backend_group_handle:
            if any(live["group"] == backend_group_handle for live in self.listeners.values()):
                raise ProviderError(f"ResourceInUse: {backend_group_handle} is used by another listener")
            self.groups.pop(backend_group_handle, None)

    def count(self, method):
        return sum(1 for c in self.calls if c[0] == method)


class FakeCluster:
    """Services keyed by namespace/name, copied on read like a real API would."""

    def __init__(self):
        self.services = {}
        self.update_error = None
        self.get_error = None
        self.updates = 0

    def add(self, identity, node_port=30080, kind="NodePort", opted_in=True, annotations=None):
        namespace, name = identity.split("/", 1)
        notes = dict(annotations or {})
        if opted_in:
            notes[MARKER] = "true"
        self.services[identity] = ServiceRecord(namespace, name, kind, node_port, notes)
        return self.services[identity]

    def remove(self, identity):
        self.services.pop(identity, None)

    def annotations(self, identity):
        return self.services[identity].annotations

    def get(self, service):
        if self.get_error is not None:
            raise self.get_error
        record = self.services.get(service)
        return copy.deepcopy(record) if record else None

    def update(self, record):
        if self.update_error is not None:
            raise self.update_error
        if record.identity not in self.services:
            raise ServiceNotFound(record.identity)
        self.updates += 1
        self.services[record.identity] = copy.deepcopy(record)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def make_reconciler(provider, cluster):
    def _make(lbs=("lb1",), port_min=9000, port_max=9049):
        pool = [LoadBalancer(name, f"{name}.elb.example.com") for name in lbs]
        return Reconciler(Ledger(pool, port_min, port_max), cluster, provider, service_marker=MARKER)

    return _make
