from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Load balancer pool and provider scope
    nlb_list: str = os.getenv("NLB_LIST", "")
    vpc_id: str = os.getenv("VPC_ID", "")
    aws_region: str = os.getenv("AWS_REGION", "us-west-1")
    port_min: int = _env_int("NLBC_PORT_MIN", 9000)
    port_max: int = _env_int("NLBC_PORT_MAX", 9049)
    target_group_prefix: str = os.getenv("NLBC_TARGET_GROUP_PREFIX", "nlbc-")
    listener_protocol: str = os.getenv("NLBC_LISTENER_PROTOCOL", "TCP")

    # Which services get exposed
    service_marker: str = os.getenv("NLBC_SERVICE_MARKER", "github.com/chinmayrelkar/service")
    service_type: str = os.getenv("NLBC_SERVICE_TYPE", "NodePort")

    # Control loop
    workers: int = _env_int("NLBC_WORKERS", 2)
    resync_interval_s: int = _env_int("NLBC_RESYNC_INTERVAL_S", 300)
    sweep_interval_s: int = _env_int("NLBC_SWEEP_INTERVAL_S", 120)
    watch_timeout_s: int = _env_int("NLBC_WATCH_TIMEOUT_S", 300)
    retry_base_s: float = _env_float("NLBC_RETRY_BASE_S", 1.0)
    retry_max_s: float = _env_float("NLBC_RETRY_MAX_S", 120.0)
    retry_max_attempts: int = _env_int("NLBC_RETRY_MAX_ATTEMPTS", 0)

    # Event log / status API
    db_path: str = os.getenv("NLBC_DB_PATH", "nlbc.db")
    admin_user: str = os.getenv("NLBC_ADMIN_USER", "admin")
    admin_password: str | None = os.getenv("NLBC_ADMIN_PASSWORD")

    # Email escalation (optional)
    enable_email: bool = _env_bool("NLBC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("NLBC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("NLBC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("NLBC_SMTP_USER")
    smtp_password: str | None = os.getenv("NLBC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("NLBC_EMAIL_FROM")
    email_to: str | None = os.getenv("NLBC_EMAIL_TO")


settings = Settings()


class ConfigError(ValueError):
    """Start-up configuration is missing or malformed."""
