from __future__ import annotations

from pydantic import BaseModel, Field


class AllocationOut(BaseModel):
    service: str = Field(..., description="namespace/name")
    load_balancer: str
    host: str
    port: int
    listener_handle: str
    backend_group_handle: str


class PortOut(BaseModel):
    port: int
    service: str


class LoadBalancerOut(BaseModel):
    name: str
    host: str
    port_min: int
    port_max: int
    free: int = Field(..., ge=0)
    occupied: list[PortOut]


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    service_name: str | None = None
    message: str


class DanglingOut(BaseModel):
    id: int
    kind: str = Field(..., description="orphan|leak")
    service_name: str
    load_balancer: str | None = None
    port: int | None = None
    listener_handle: str
    backend_group_handle: str
    reason: str
    status: str
    attempts: int
    created_at: str
    updated_at: str
