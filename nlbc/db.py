from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings

logger = logging.getLogger("nlbc")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a volume mount), the DB file
    is placed inside it.
    """
    p = os.path.abspath(settings.db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "nlbc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS dangling (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              kind TEXT NOT NULL, -- orphan|leak
              service_name TEXT NOT NULL,
              load_balancer TEXT,
              port INTEGER,
              listener_handle TEXT NOT NULL,
              backend_group_handle TEXT NOT NULL,
              reason TEXT NOT NULL,
              status TEXT NOT NULL, -- pending|collected
              attempts INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_dangling_status ON dangling(kind, status);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    level = level.upper()
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{service_name}] " if service_name else "", message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level, service_name, message),
        )


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class DanglingRow:
    id: int
    kind: str
    service_name: str
    load_balancer: str | None
    port: int | None
    listener_handle: str
    backend_group_handle: str
    reason: str
    status: str
    attempts: int
    created_at: str
    updated_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    return [cls(**dict(r)) for r in rows]


def record_dangling(
    kind: str,
    service_name: str,
    listener_handle: str,
    backend_group_handle: str,
    reason: str,
    load_balancer: str | None = None,
    port: int | None = None,
) -> DanglingRow:
    """Remember provider objects nothing references any more.

    A pending row for the same handles is reused rather than duplicated.
    """
    with connect() as conn:
        row = conn.execute(
            """
            SELECT * FROM dangling
            WHERE kind=? AND listener_handle=? AND backend_group_handle=? AND status='pending'
            """,
            (kind, listener_handle, backend_group_handle),
        ).fetchone()
        if row:
            return DanglingRow(**dict(row))
        now = utc_now()
        cur = conn.execute(
            """
            INSERT INTO dangling (kind, service_name, load_balancer, port, listener_handle, backend_group_handle,
                                  reason, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (kind, service_name, load_balancer, port, listener_handle, backend_group_handle, reason, now, now),
        )
        row = conn.execute("SELECT * FROM dangling WHERE id=?", (cur.lastrowid,)).fetchone()
        return DanglingRow(**dict(row))


def list_dangling(kind: str | None = None, status: str | None = "pending") -> list[DanglingRow]:
    clauses: list[str] = []
    params: list[Any] = []
    if kind:
        clauses.append("kind=?")
        params.append(kind)
    if status:
        clauses.append("status=?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect() as conn:
        rows = conn.execute(f"SELECT * FROM dangling {where} ORDER BY id", params).fetchall()
        return _rows_to_dataclass(rows, DanglingRow)


def mark_dangling_collected(row_id: int) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE dangling SET status='collected', updated_at=? WHERE id=?",
            (utc_now(), row_id),
        )


def bump_dangling_attempts(row_id: int) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE dangling SET attempts=attempts+1, updated_at=? WHERE id=?",
            (utc_now(), row_id),
        )


def orphan_uses_group(backend_group_handle: str, exclude_id: int | None = None) -> bool:
    """True when a pending orphan listener may still forward to this target group."""
    if not backend_group_handle:
        return False
    with connect() as conn:
        row = conn.execute(
            "SELECT 1 FROM dangling WHERE kind='orphan' AND status='pending' AND backend_group_handle=? AND id!=? LIMIT 1",
            (backend_group_handle, -1 if exclude_id is None else exclude_id),
        ).fetchone()
        return row is not None
