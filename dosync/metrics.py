from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable


_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(raw: str) -> datetime:
    return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory; the database file then goes inside it.
    """
    if path == ":memory:":
        return path
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "dosync.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


@dataclass(frozen=True)
class DeploymentRecord:
    id: int
    service_name: str
    version: str
    start_time: str
    end_time: str | None
    success: bool | None
    duration: float | None
    failure_reason: str | None
    rollback: bool


@dataclass(frozen=True)
class EventRow:
    id: int
    ts: str
    level: str
    service_name: str | None
    version: str | None
    message: str


def _record(row: sqlite3.Row) -> DeploymentRecord:
    d = dict(row)
    d["success"] = None if d["success"] is None else bool(d["success"])
    d["rollback"] = bool(d["rollback"])
    return DeploymentRecord(**d)


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    return [cls(**dict(r)) for r in rows]


class MetricsCollector:
    """Deployment history and the event log, stored in sqlite."""

    def __init__(self, db_path: str = "dosync.db"):
        self.db_path = _resolve_db_path(db_path)
        self._memory: sqlite3.Connection | None = None
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        if self.db_path == ":memory:":
            if self._memory is None:
                self._memory = sqlite3.connect(":memory:", check_same_thread=False)
                self._memory.row_factory = sqlite3.Row
            return self._memory
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS deployment_records (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  service_name TEXT NOT NULL,
                  version TEXT NOT NULL,
                  start_time TEXT NOT NULL,
                  end_time TEXT,
                  success INTEGER, -- NULL while in progress
                  duration REAL,
                  failure_reason TEXT,
                  rollback INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  service_name TEXT,
                  version TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_deployments_service ON deployment_records(service_name, start_time);
                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    # -- deployments -------------------------------------------------------

    def record_deployment_start(self, service: str, version: str) -> int:
        with self.connect() as conn:
            cur = conn.execute(
                "INSERT INTO deployment_records (service_name, version, start_time) VALUES (?, ?, ?)",
                (service, version, utc_now()),
            )
            return int(cur.lastrowid)

    def _finish(self, record_id: int, success: bool, reason: str | None, duration_s: float | None) -> None:
        end = utc_now()
        with self.connect() as conn:
            row = conn.execute("SELECT start_time FROM deployment_records WHERE id=?", (record_id,)).fetchone()
            if row is None:
                raise KeyError(f"unknown deployment record {record_id}")
            if duration_s is None:
                duration_s = (_parse_ts(end) - _parse_ts(row["start_time"])).total_seconds()
            conn.execute(
                "UPDATE deployment_records SET end_time=?, success=?, duration=?, failure_reason=? WHERE id=?",
                (end, 1 if success else 0, round(duration_s, 3), reason, record_id),
            )

    def record_deployment_success(self, record_id: int, duration_s: float | None = None) -> None:
        self._finish(record_id, True, None, duration_s)

    def record_deployment_failure(self, record_id: int, reason: str, duration_s: float | None = None) -> None:
        self._finish(record_id, False, reason, duration_s)

    def record_rollback(self, record_id: int) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE deployment_records SET rollback=1 WHERE id=?", (record_id,))

    def deployment_records(self, service: str | None = None, limit: int = 50) -> list[DeploymentRecord]:
        with self.connect() as conn:
            if service:
                rows = conn.execute(
                    "SELECT * FROM deployment_records WHERE service_name=? ORDER BY id DESC LIMIT ?",
                    (service, int(limit)),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM deployment_records ORDER BY id DESC LIMIT ?", (int(limit),)).fetchall()
        return [_record(r) for r in rows]

    def services_with_metrics(self) -> list[str]:
        with self.connect() as conn:
            rows = conn.execute("SELECT DISTINCT service_name FROM deployment_records ORDER BY service_name").fetchall()
        return [r["service_name"] for r in rows]

    def success_rate(self, service: str) -> float:
        """Fraction of finished deployments that succeeded (0.0 when none finished)."""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS ok FROM deployment_records "
                "WHERE service_name=? AND success IS NOT NULL",
                (service,),
            ).fetchone()
        if not row["total"]:
            return 0.0
        return row["ok"] / row["total"]

    def average_deployment_time(self, service: str) -> float | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT AVG(duration) AS avg FROM deployment_records WHERE service_name=? AND success=1",
                (service,),
            ).fetchone()
        return None if row["avg"] is None else float(row["avg"])

    def rollback_count(self, service: str) -> int:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM deployment_records WHERE service_name=? AND rollback=1",
                (service,),
            ).fetchone()
        return int(row["n"])

    def stats(self, service: str) -> dict[str, Any]:
        return {
            "service": service,
            "success_rate": self.success_rate(service),
            "average_deployment_time_s": self.average_deployment_time(service),
            "rollback_count": self.rollback_count(service),
        }

    def prune_older_than(self, days: int) -> int:
        """Delete deployment records and events older than `days`. Returns rows removed."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).strftime(_TS_FORMAT)
        with self.connect() as conn:
            a = conn.execute("DELETE FROM deployment_records WHERE start_time < ?", (cutoff,)).rowcount
            b = conn.execute("DELETE FROM events WHERE ts < ?", (cutoff,)).rowcount
        return a + b

    # -- events ------------------------------------------------------------

    def log_event(self, level: str, message: str, service_name: str | None = None, version: str | None = None) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, service_name, version, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), service_name, version, message),
            )

    def latest_events(self, limit: int = 100) -> list[EventRow]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (int(limit),)).fetchall()
        return _rows_to_dataclass(rows, EventRow)
