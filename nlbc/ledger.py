from __future__ import annotations

from dataclasses import dataclass, replace
from threading import Lock
from typing import Iterable

from .settings import ConfigError


@dataclass(frozen=True)
class LoadBalancer:
    name: str
    host: str


@dataclass(frozen=True)
class Allocation:
    service: str  # namespace/name
    load_balancer: str
    port: int
    listener_handle: str = ""
    backend_group_handle: str = ""

    @property
    def slot(self) -> tuple[str, int]:
        return self.load_balancer, self.port


class SlotTaken(Exception):
    def __init__(self, load_balancer: str, port: int, owner: str):
        super().__init__(f"{load_balancer}:{port} is reserved for {owner}")
        self.load_balancer = load_balancer
        self.port = port
        self.owner = owner


class PoolExhausted(Exception):
    pass


class UnknownSlot(ValueError):
    pass


def load_pool(raw: str) -> list[LoadBalancer]:
    """Parse the ``name:host,name:host`` load balancer list.

    Order is kept; it is the scan order used when looking for a free port.
    """
    entries = [e.strip() for e in (raw or "").split(",") if e.strip()]
    if not entries:
        raise ConfigError("NLB_LIST is empty. Needs a comma separated list of name:host pairs.")
    pool: list[LoadBalancer] = []
    seen: set[str] = set()
    for entry in entries:
        name, sep, host = entry.partition(":")
        name, host = name.strip(), host.strip()
        if not sep or not name or not host:
            raise ConfigError(f"Malformed NLB_LIST entry {entry!r}, expected name:host.")
        if name in seen:
            raise ConfigError(f"Duplicate load balancer {name!r} in NLB_LIST.")
        seen.add(name)
        pool.append(LoadBalancer(name=name, host=host))
    return pool


class Ledger:
    """In-memory index of (load balancer, port) <-> service allocations.

    Both indices live behind one lock so they are never observed out of sync.
    Nothing here talks to the provider or the cluster.
    """

    def __init__(self, pool: list[LoadBalancer], port_min: int = 9000, port_max: int = 9049) -> None:
        if not pool:
            raise ConfigError("Load balancer pool is empty.")
        if port_min > port_max:
            raise ConfigError(f"Empty port range {port_min}-{port_max}.")
        self.lock = Lock()
        self.pool = list(pool)
        self.port_min = port_min
        self.port_max = port_max
        self._hosts = {lb.name: lb.host for lb in self.pool}
        self._owners: dict[str, dict[int, str]] = {lb.name: {} for lb in self.pool}  # lb -> port -> service
        self._allocations: dict[str, Allocation] = {}  # service -> allocation

    def ports(self) -> range:
        return range(self.port_min, self.port_max + 1)

    def has_slot(self, load_balancer: str, port: int) -> bool:
        return load_balancer in self._hosts and self.port_min <= port <= self.port_max

    def host(self, load_balancer: str) -> str:
        return self._hosts[load_balancer]

    def reserve(
        self,
        load_balancer: str,
        port: int,
        service: str,
        listener_handle: str = "",
        backend_group_handle: str = "",
    ) -> Allocation:
        """Occupy a slot for ``service``; raises SlotTaken if someone else holds it."""
        if not self.has_slot(load_balancer, port):
            raise UnknownSlot(f"{load_balancer}:{port} is not part of the pool")
        with self.lock:
            owner = self._owners[load_balancer].get(port)
            if owner is not None and owner != service:
                raise SlotTaken(load_balancer, port, owner)
            return self._put(Allocation(service, load_balancer, port, listener_handle, backend_group_handle))

    def find_free_slot(self, service: str, avoid: Iterable[tuple[str, int]] = ()) -> Allocation:
        """Reserve the first free slot in pool order, then ascending port.

        Whatever the service held before is given up. Slots in ``avoid`` are
        only handed out when no other slot is free.
        """
        skip = set(avoid)
        with self.lock:
            self._drop(service)
            fallback: tuple[str, int] | None = None
            for lb in self.pool:
                taken = self._owners[lb.name]
                for port in self.ports():
                    if port in taken:
                        continue
                    if (lb.name, port) in skip:
                        fallback = fallback or (lb.name, port)
                        continue
                    return self._put(Allocation(service, lb.name, port))
            if fallback is not None:
                return self._put(Allocation(service, *fallback))
        raise PoolExhausted("no vacant load balancer port")

    def bind(self, service: str, listener_handle: str, backend_group_handle: str) -> Allocation:
        with self.lock:
            current = self._allocations.get(service)
            if current is None:
                raise KeyError(service)
            updated = replace(current, listener_handle=listener_handle, backend_group_handle=backend_group_handle)
            self._allocations[service] = updated
            return updated

    def release(self, service: str) -> Allocation | None:
        with self.lock:
            return self._drop(service)

    def get(self, service: str) -> Allocation | None:
        with self.lock:
            return self._allocations.get(service)

    def allocations(self) -> list[Allocation]:
        with self.lock:
            return sorted(self._allocations.values(), key=lambda a: a.service)

    def occupancy(self) -> dict[str, dict[int, str]]:
        with self.lock:
            return {lb: dict(sorted(ports.items())) for lb, ports in self._owners.items()}

    def listener_owner(self, listener_handle: str) -> str | None:
        with self.lock:
            for a in self._allocations.values():
                if listener_handle and a.listener_handle == listener_handle:
                    return a.service
            return None

    def backend_group_in_use(self, backend_group_handle: str, exclude: str | None = None) -> bool:
        with self.lock:
            return any(
                backend_group_handle and a.backend_group_handle == backend_group_handle and a.service != exclude
                for a in self._allocations.values()
            )

    # Callers must hold self.lock.
    def _put(self, allocation: Allocation) -> Allocation:
        previous = self._allocations.get(allocation.service)
        if previous is not None and previous.slot != allocation.slot:
            self._owners[previous.load_balancer].pop(previous.port, None)
        self._allocations[allocation.service] = allocation
        self._owners[allocation.load_balancer][allocation.port] = allocation.service
        return allocation

    def _drop(self, service: str) -> Allocation | None:
        previous = self._allocations.pop(service, None)
        if previous is not None:
            taken = self._owners[previous.load_balancer]
            if taken.get(previous.port) == service:
                del taken[previous.port]
        return previous
