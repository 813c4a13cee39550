from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterator

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .db import log_event

ANNOTATION_NLB_HOST = "service-nlb-host"
ANNOTATION_NLB_NAME = "service-nlb-name"
ANNOTATION_PORT = "service-nlb-port"
ANNOTATION_LISTENER = "service-nlb-listener"
ANNOTATION_TARGET = "service-nlb-target"


class ClusterError(Exception):
    """Reading or writing a service failed; retry later."""


class ServiceNotFound(ClusterError):
    pass


class MalformedBinding(ValueError):
    pass


def split_identity(service: str) -> tuple[str, str]:
    namespace, sep, name = service.partition("/")
    if not sep or not namespace or not name:
        raise ValueError(f"service identity must be namespace/name, got {service!r}")
    return namespace, name


@dataclass(frozen=True)
class BindingRecord:
    load_balancer: str
    host: str
    port: int
    listener_handle: str
    backend_group_handle: str

    @classmethod
    def from_annotations(cls, annotations: dict[str, str]) -> "BindingRecord | None":
        """None when the service carries no binding; MalformedBinding when it is unreadable."""
        name = annotations.get(ANNOTATION_NLB_NAME, "")
        if not name:
            return None
        raw_port = annotations.get(ANNOTATION_PORT, "")
        try:
            port = int(raw_port)
        except ValueError:
            raise MalformedBinding(f"malformed port {raw_port!r} in service annotations") from None
        return cls(
            load_balancer=name,
            host=annotations.get(ANNOTATION_NLB_HOST, ""),
            port=port,
            listener_handle=annotations.get(ANNOTATION_LISTENER, ""),
            backend_group_handle=annotations.get(ANNOTATION_TARGET, ""),
        )

    def to_annotations(self) -> dict[str, str]:
        return {
            ANNOTATION_NLB_NAME: self.load_balancer,
            ANNOTATION_NLB_HOST: self.host,
            ANNOTATION_PORT: str(self.port),
            ANNOTATION_LISTENER: self.listener_handle,
            ANNOTATION_TARGET: self.backend_group_handle,
        }


@dataclass
class ServiceRecord:
    namespace: str
    name: str
    kind: str
    backend_port: int | None
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_api(cls, svc: client.V1Service) -> "ServiceRecord":
        ports = (svc.spec.ports or []) if svc.spec else []
        return cls(
            namespace=svc.metadata.namespace,
            name=svc.metadata.name,
            kind=(svc.spec.type if svc.spec else "") or "",
            backend_port=ports[0].node_port if ports and ports[0].node_port else None,
            annotations=dict(svc.metadata.annotations or {}),
        )


def load_kube_config() -> None:
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


class KubeServices:
    """The cluster side: read services, write binding annotations, stream changes."""

    def __init__(self, core: client.CoreV1Api | None = None, watch_timeout_s: int = 300) -> None:
        self.core = core or client.CoreV1Api()
        self.watch_timeout_s = watch_timeout_s

    def get(self, service: str) -> ServiceRecord | None:
        namespace, name = split_identity(service)
        try:
            svc = self.core.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise ClusterError(f"unable to fetch service {service}: {e.status} {e.reason}") from e
        return ServiceRecord.from_api(svc)

    def update(self, record: ServiceRecord) -> None:
        """Merge the record's annotations onto the live service."""
        body = {"metadata": {"annotations": dict(record.annotations)}}
        try:
            self.core.patch_namespaced_service(name=record.name, namespace=record.namespace, body=body)
        except ApiException as e:
            if e.status == 404:
                raise ServiceNotFound(f"service {record.identity} no longer exists") from e
            raise ClusterError(f"unable to update service {record.identity}: {e.status} {e.reason}") from e

    def list_identities(self) -> tuple[list[str], str]:
        """All service identities plus the list's resourceVersion."""
        try:
            resp = self.core.list_service_for_all_namespaces()
        except ApiException as e:
            raise ClusterError(f"unable to list services: {e.status} {e.reason}") from e
        names = [f"{s.metadata.namespace}/{s.metadata.name}" for s in resp.items]
        return names, resp.metadata.resource_version

    def watch_identities(self, resource_version: str | None, stop: threading.Event) -> Iterator[str]:
        """Yield identities of changed services until ``stop`` is set.

        Re-lists when the server reports the resourceVersion as expired.
        """
        while not stop.is_set():
            w = watch.Watch()
            try:
                for event in w.stream(
                    self.core.list_service_for_all_namespaces,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_s,
                ):
                    obj = event["object"]
                    resource_version = obj.metadata.resource_version
                    yield f"{obj.metadata.namespace}/{obj.metadata.name}"
                    if stop.is_set():
                        break
            except ApiException as e:
                if e.status != 410:
                    raise ClusterError(f"service watch failed: {e.status} {e.reason}") from e
                log_event("INFO", "Service watch expired, relisting")
                names, resource_version = self.list_identities()
                yield from names
            finally:
                w.stop()
