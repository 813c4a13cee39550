from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from . import alerts, db
from .gateway import ProviderError, ProviderGateway
from .kube import (
    ANNOTATION_LISTENER,
    ANNOTATION_TARGET,
    BindingRecord,
    ClusterError,
    MalformedBinding,
    ServiceNotFound,
    ServiceRecord,
)
from .ledger import Ledger, PoolExhausted, SlotTaken

DONE = "done"
RETRY = "retry"
FATAL = "fatal"


@dataclass(frozen=True)
class Outcome:
    action: str  # done|retry|fatal
    message: str = ""
    warning: bool = False


def done(message: str = "") -> Outcome:
    return Outcome(DONE, message)


def retry(message: str, warning: bool = False) -> Outcome:
    return Outcome(RETRY, message, warning)


def fatal(message: str) -> Outcome:
    return Outcome(FATAL, message)


class ServiceStore(Protocol):
    def get(self, service: str) -> ServiceRecord | None: ...

    def update(self, record: ServiceRecord) -> None: ...


class Reconciler:
    """Keeps one service's load balancer binding in line with the ledger and the provider.

    One call to ``reconcile`` is one pass for one service. Passes for the same
    service must not overlap; passes for different services may.
    """

    def __init__(
        self,
        ledger: Ledger,
        cluster: ServiceStore,
        provider: ProviderGateway,
        service_type: str = "NodePort",
        service_marker: str = "github.com/chinmayrelkar/service",
    ):
        self.ledger = ledger
        self.cluster = cluster
        self.provider = provider
        self.service_type = service_type
        self.service_marker = service_marker
        self._allocating = 0
        self._allocating_lock = Lock()

    def eligible(self, record: ServiceRecord) -> bool:
        return (
            record.kind == self.service_type
            and record.annotations.get(self.service_marker) == "true"
            and record.backend_port is not None
        )

    def reconcile(self, service: str) -> Outcome:
        try:
            record = self.cluster.get(service)
        except ClusterError as e:
            db.log_event("ERROR", f"Unable to fetch service: {e}", service_name=service)
            return retry(str(e))

        if record is None:
            return self._delete(service)

        if not self.eligible(record):
            return done("not eligible")

        avoid: list[tuple[str, int]] = []
        try:
            binding = BindingRecord.from_annotations(record.annotations)
        except MalformedBinding as e:
            db.log_event("WARN", f"{e}. Reallocating", service_name=service)
            self._abandon(
                service,
                record.annotations.get(ANNOTATION_LISTENER, ""),
                record.annotations.get(ANNOTATION_TARGET, ""),
                reason=str(e),
            )
            binding = None

        if binding is not None:
            avoid.append((binding.load_balancer, binding.port))
            try:
                outcome = self._verify(record, binding)
            except ProviderError as e:
                db.log_event("ERROR", f"Unable to validate listener: {e}", service_name=service)
                return retry(str(e))
            if outcome is not None:
                return outcome

        return self._allocate(record, avoid)

    def _verify(self, record: ServiceRecord, binding: BindingRecord) -> Outcome | None:
        """Done when the recorded binding still holds; None to reallocate."""
        service = record.identity
        if not self.ledger.has_slot(binding.load_balancer, binding.port):
            reason = f"binding {binding.load_balancer}:{binding.port} is outside the pool"
            db.log_event("WARN", f"{reason}. Reallocating", service_name=service)
            self._abandon(service, binding.listener_handle, binding.backend_group_handle, reason, binding)
            return None

        mismatch = self.provider.validate_listener(
            binding.listener_handle,
            binding.backend_group_handle,
            binding.load_balancer,
            binding.port,
            record.backend_port,
        )
        if mismatch is not None:
            db.log_event("WARN", f"Binding is stale ({mismatch}). Reallocating", service_name=service)
            self._abandon(service, binding.listener_handle, binding.backend_group_handle, str(mismatch), binding)
            return None

        try:
            self.ledger.reserve(
                binding.load_balancer,
                binding.port,
                service,
                binding.listener_handle,
                binding.backend_group_handle,
            )
        except SlotTaken as e:
            db.log_event("WARN", f"{e}. Reallocating", service_name=service)
            self._abandon(service, binding.listener_handle, binding.backend_group_handle, str(e), binding)
            return None
        return done("binding valid")

    def _allocate(self, record: ServiceRecord, avoid: list[tuple[str, int]]) -> Outcome:
        with self._allocating_lock:
            self._allocating += 1
        try:
            return self._allocate_slot(record, avoid)
        finally:
            with self._allocating_lock:
                self._allocating -= 1

    def _allocate_slot(self, record: ServiceRecord, avoid: list[tuple[str, int]]) -> Outcome:
        service = record.identity
        try:
            slot = self.ledger.find_free_slot(service, avoid=avoid)
        except PoolExhausted as e:
            db.log_event("WARN", f"Unable to get vacant nlb and port: {e}. Add load balancer capacity", service_name=service)
            return retry(str(e), warning=True)

        try:
            ref = self.provider.create_listener(slot.load_balancer, slot.port, record.backend_port, service)
        except ProviderError as e:
            self.ledger.release(service)
            db.log_event("ERROR", f"Unable to create listener on {slot.load_balancer}:{slot.port}: {e}", service_name=service)
            return retry(str(e))

        self.ledger.bind(service, ref.listener_handle, ref.backend_group_handle)
        binding = BindingRecord(
            load_balancer=slot.load_balancer,
            host=self.ledger.host(slot.load_balancer),
            port=slot.port,
            listener_handle=ref.listener_handle,
            backend_group_handle=ref.backend_group_handle,
        )
        record.annotations.update(binding.to_annotations())

        try:
            self.cluster.update(record)
        except ClusterError as e:
            db.log_event("ERROR", f"Unable to update service: {e}", service_name=service)
            return self._roll_back(service, binding, e)

        db.log_event(
            "INFO",
            f"Load balancer {slot.load_balancer}:{slot.port} assigned (backend port {record.backend_port})",
            service_name=service,
        )
        return done(f"allocated {slot.load_balancer}:{slot.port}")

    def _roll_back(self, service: str, binding: BindingRecord, cause: ClusterError) -> Outcome:
        self.ledger.release(service)
        group = binding.backend_group_handle
        if self.ledger.backend_group_in_use(group) or db.orphan_uses_group(group):
            group = None
        try:
            self.provider.delete_listener(binding.listener_handle, group)
        except ProviderError as e:
            detail = f"failed to delete listener for a failed service update ({cause}): {e}"
            db.log_event("CRITICAL", f"SEV0: {detail}", service_name=service)
            db.record_dangling(
                "leak",
                service,
                binding.listener_handle,
                binding.backend_group_handle,
                detail,
                load_balancer=binding.load_balancer,
                port=binding.port,
            )
            alerts.leaked_resource(service, binding.listener_handle, binding.backend_group_handle, detail)
            return fatal(detail)

        if isinstance(cause, ServiceNotFound):
            db.log_event("INFO", "Service disappeared during allocation; listener removed", service_name=service)
            return done("service gone")
        return retry(str(cause))

    def _delete(self, service: str) -> Outcome:
        allocation = self.ledger.get(service)
        if allocation is None:
            return done("no allocation found")

        group: str | None = allocation.backend_group_handle
        if self.ledger.backend_group_in_use(allocation.backend_group_handle, exclude=service) or db.orphan_uses_group(
            allocation.backend_group_handle
        ):
            group = None
        try:
            self.provider.delete_listener(allocation.listener_handle, group)
        except ProviderError as e:
            db.log_event("ERROR", f"Unable to delete listener and target group: {e}", service_name=service)
            return retry(str(e))

        self.ledger.release(service)
        db.log_event(
            "INFO",
            f"Service removed; released {allocation.load_balancer}:{allocation.port}",
            service_name=service,
        )
        return done("released")

    def _abandon(
        self,
        service: str,
        listener_handle: str,
        backend_group_handle: str,
        reason: str,
        binding: BindingRecord | None = None,
    ) -> None:
        """Queue a stale binding's provider objects for the orphan sweep."""
        if not listener_handle:
            return
        owner = self.ledger.listener_owner(listener_handle)
        if owner is not None and owner != service:
            return
        db.record_dangling(
            "orphan",
            service,
            listener_handle,
            backend_group_handle,
            reason,
            load_balancer=binding.load_balancer if binding else None,
            port=binding.port if binding else None,
        )

    def collect_orphans(self) -> int:
        """Delete abandoned listeners that no allocation refers to. Returns how many were removed."""
        # An allocation in flight may be about to reuse an abandoned slot or group;
        # holding the lock keeps new allocations out until the sweep is over.
        with self._allocating_lock:
            if self._allocating:
                return 0
            return self._sweep()

    def _sweep(self) -> int:
        collected = 0
        for row in db.list_dangling(kind="orphan"):
            if self.ledger.listener_owner(row.listener_handle) is not None:
                db.mark_dangling_collected(row.id)
                continue
            group: str | None = row.backend_group_handle
            if self.ledger.backend_group_in_use(group) or db.orphan_uses_group(group, exclude_id=row.id):
                group = None
            try:
                self.provider.delete_listener(row.listener_handle, group)
            except ProviderError as e:
                db.bump_dangling_attempts(row.id)
                db.log_event("WARN", f"Unable to remove orphaned listener {row.listener_handle}: {e}", service_name=row.service_name)
                continue
            db.mark_dangling_collected(row.id)
            db.log_event("INFO", f"Removed orphaned listener {row.listener_handle}", service_name=row.service_name)
            collected += 1
        return collected
