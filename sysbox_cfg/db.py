from __future__ import annotations

import json
import logging
import os
import sqlite3
from typing import Any, Iterable

from .runtime import utc_now
from .settings import settings

logger = logging.getLogger("sysbox_cfg")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def journal_enabled() -> bool:
    return bool(settings.journal_path)


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a bind mount created by the
    container runtime), the journal file is placed inside it.
    """
    p = os.path.abspath(settings.journal_path)
    if os.path.isdir(p):
        p = os.path.join(p, "sysbox-cfg.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path())
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist. No-op when the journal is disabled."""
    if not journal_enabled():
        return
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

            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              command TEXT NOT NULL,
              verdict TEXT,
              categories TEXT NOT NULL, -- JSON list
              outcome TEXT NOT NULL,
              dry_run INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    level = level.upper()
    prefix = f"{service_name}: " if service_name else ""
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", prefix, message)
    if not journal_enabled():
        return
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level, service_name, message),
        )


def record_run(command: str, verdict: str | None, categories: Iterable[str], outcome: str, dry_run: bool) -> None:
    if not journal_enabled():
        return
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO runs (ts, command, verdict, categories, outcome, dry_run)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (utc_now(), command, verdict, json.dumps(sorted(categories)), outcome, int(dry_run)),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def latest_runs(limit: int = 20) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["categories"] = json.loads(d["categories"])
        d["dry_run"] = bool(d["dry_run"])
        out.append(d)
    return out
