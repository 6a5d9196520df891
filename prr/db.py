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

    If the configured path is a directory (a bind mount of a path that did not
    exist yet ends up as one), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "prr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
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
              workload TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS transitions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              workload TEXT NOT NULL,
              from_state TEXT NOT NULL,
              to_state TEXT NOT NULL,
              from_index INTEGER NOT NULL,
              to_index INTEGER NOT NULL,
              from_replicas INTEGER,
              to_replicas INTEGER NOT NULL,
              paused INTEGER NOT NULL,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_transitions_workload ON transitions(workload);
            """
        )


def log_event(level: str, message: str, workload: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, workload, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), workload, message),
        )


@dataclass(frozen=True)
class TransitionRow:
    id: int
    ts: str
    workload: str
    from_state: str
    to_state: str
    from_index: int
    to_index: int
    from_replicas: int | None
    to_replicas: int
    paused: bool
    message: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        d = dict(r)
        if "paused" in d:
            d["paused"] = bool(d["paused"])
        out.append(cls(**d))
    return out


def record_transition(
    workload: str,
    from_state: str,
    to_state: str,
    from_index: int,
    to_index: int,
    from_replicas: int | None,
    to_replicas: int,
    paused: bool,
    message: str,
) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO transitions (ts, workload, from_state, to_state, from_index, to_index,
                                     from_replicas, to_replicas, paused, message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                utc_now(),
                workload,
                from_state,
                to_state,
                from_index,
                to_index,
                from_replicas,
                to_replicas,
                int(paused),
                message,
            ),
        )


def list_transitions(workload: str, limit: int = 100) -> list[TransitionRow]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM transitions WHERE workload=? ORDER BY id DESC LIMIT ?",
            (workload, limit),
        ).fetchall()
        return _rows_to_dataclass(rows, TransitionRow)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
