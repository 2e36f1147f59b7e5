from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist is created as a directory by
    Docker; in that case the DB file goes inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "topo.db")

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
            CREATE TABLE IF NOT EXISTS instances (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              service_name TEXT NOT NULL,
              handle TEXT NOT NULL,
              started_at TEXT NOT NULL,
              stopped_at TEXT,
              exit_reason TEXT,
              restart_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_instances_service ON instances(service_name);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, message),
        )


@dataclass(frozen=True)
class InstanceRow:
    id: int
    service_name: str
    handle: str
    started_at: str
    stopped_at: str | None
    exit_reason: str | None
    restart_count: int


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def record_start(service_name: str, handle: str, restart_count: int) -> int:
    with connect() as conn:
        cur = conn.execute(
            "INSERT INTO instances (service_name, handle, started_at, restart_count) VALUES (?, ?, ?, ?)",
            (service_name, handle, utc_now(), restart_count),
        )
        return int(cur.lastrowid)


def record_stop(row_id: int, exit_reason: str) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE instances SET stopped_at=?, exit_reason=? WHERE id=?",
            (utc_now(), exit_reason, row_id),
        )


def list_instances(service_name: str | None = None) -> list[InstanceRow]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM instances WHERE service_name=? ORDER BY id", (service_name,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM instances ORDER BY id").fetchall()
        return _rows_to_dataclass(rows, InstanceRow)


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
