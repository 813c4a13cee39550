from __future__ import annotations

import logging
import secrets
import sys
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from nlbc import db
from nlbc.api_models import AllocationOut, DanglingOut, EventOut, LoadBalancerOut, PortOut
from nlbc.aws_ops import AwsGateway
from nlbc.controller import Controller
from nlbc.kube import KubeServices, load_kube_config
from nlbc.ledger import Ledger, load_pool
from nlbc.reconciler import Reconciler
from nlbc.settings import ConfigError, settings
from nlbc.workqueue import RetryPolicy

app = FastAPI(title="NLB port controller")
security = HTTPBasic(auto_error=False)

ledger: Ledger | None = None
controller: Controller | None = None


def build_controller() -> Controller:
    """Wire the ledger, cluster and provider together. Raises ConfigError on bad configuration."""
    global ledger
    pool = load_pool(settings.nlb_list)
    if not settings.vpc_id:
        raise ConfigError("VPC_ID is not set.")
    ledger = Ledger(pool, settings.port_min, settings.port_max)

    load_kube_config()
    services = KubeServices(watch_timeout_s=settings.watch_timeout_s)
    reconciler = Reconciler(
        ledger,
        services,
        AwsGateway.from_settings(),
        service_type=settings.service_type,
        service_marker=settings.service_marker,
    )
    return Controller(
        reconciler,
        services,
        workers=settings.workers,
        policy=RetryPolicy(settings.retry_base_s, settings.retry_max_s, settings.retry_max_attempts),
        resync_interval_s=settings.resync_interval_s,
        sweep_interval_s=settings.sweep_interval_s,
    )


@app.on_event("startup")
def startup() -> None:
    global controller
    db.init_db()
    try:
        controller = build_controller()
    except ConfigError as e:
        db.log_event("CRITICAL", f"Invalid configuration: {e}")
        sys.exit(1)
    controller.start()


@app.on_event("shutdown")
def shutdown() -> None:
    if controller is not None:
        controller.stop()


def require_admin(credentials: HTTPBasicCredentials | None = Depends(security)) -> str | None:
    if not settings.admin_password:
        return None
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def _ledger() -> Ledger:
    if ledger is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Controller not started")
    return ledger


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy" if ledger is not None else "starting"}


@app.get("/pool", response_model=list[LoadBalancerOut])
def get_pool(_: str | None = Depends(require_admin)) -> list[LoadBalancerOut]:
    led = _ledger()
    occupancy = led.occupancy()
    out = []
    for lb in led.pool:
        taken = occupancy.get(lb.name, {})
        out.append(
            LoadBalancerOut(
                name=lb.name,
                host=lb.host,
                port_min=led.port_min,
                port_max=led.port_max,
                free=len(led.ports()) - len(taken),
                occupied=[PortOut(port=p, service=s) for p, s in taken.items()],
            )
        )
    return out


@app.get("/allocations", response_model=list[AllocationOut])
def get_allocations(_: str | None = Depends(require_admin)) -> list[AllocationOut]:
    led = _ledger()
    return [
        AllocationOut(
            service=a.service,
            load_balancer=a.load_balancer,
            host=led.host(a.load_balancer),
            port=a.port,
            listener_handle=a.listener_handle,
            backend_group_handle=a.backend_group_handle,
        )
        for a in led.allocations()
    ]


@app.get("/events", response_model=list[EventOut])
def get_events(
    limit: int = Query(50, ge=1, le=1000),
    service: str | None = None,
    _: str | None = Depends(require_admin),
) -> list[EventOut]:
    return [EventOut(**e) for e in db.latest_events(limit, service_name=service)]


@app.get("/dangling", response_model=list[DanglingOut])
def get_dangling(
    kind: str | None = Query(None, pattern="^(orphan|leak)$"),
    include_collected: bool = False,
    _: str | None = Depends(require_admin),
) -> list[DanglingOut]:
    rows = db.list_dangling(kind=kind, status=None if include_collected else "pending")
    return [DanglingOut(**asdict(r)) for r in rows]


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
