from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

# Mismatch kinds reported by validate_listener.
LISTENER_MISSING = "listener-missing"
LISTENER_PORT = "listener-port"
LOAD_BALANCER = "load-balancer"
BACKEND_GROUP = "backend-group"
BACKEND_PORT = "backend-port"


class ProviderError(Exception):
    """A provider call failed; the pass should be retried later."""


@dataclass(frozen=True)
class Mismatch:
    kind: str
    detail: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}"


@dataclass(frozen=True)
class ListenerRef:
    listener_handle: str
    backend_group_handle: str


class ProviderGateway(Protocol):
    """What the reconciler needs from the load balancer provider.

    Every method may raise ProviderError. Deleting something that is already
    gone is not an error.
    """

    def create_listener(self, load_balancer: str, port: int, backend_port: int, service: str) -> ListenerRef:
        """Create (or reuse) the backend group for ``backend_port`` and a listener on ``port``."""
        ...

    def validate_listener(
        self,
        listener_handle: str,
        backend_group_handle: str,
        load_balancer: str,
        external_port: int,
        backend_port: int,
    ) -> Mismatch | None:
        """Compare live provider state with the expected binding. None means it matches."""
        ...

    def delete_listener(self, listener_handle: str, backend_group_handle: str | None) -> None:
        """Delete the listener, then the backend group (skipped when None)."""
        ...
