"""SQLite ledger of GPS51 calls plus the shared rate-limit backoff.

Every vendor round trip is timed and stored with the GPS51 `status` code it
returned, so throttling (8902/9904) and token expiry (9903/9906) show up in
the usage breakdown. The backoff row lets one invocation that hit a rate
limit make the next scheduled invocations wait it out too.
"""

from __future__ import annotations

import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

_DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "api_tracker.db"


def _db_path() -> str:
    return os.getenv("API_TRACKER_DB", str(_DEFAULT_DB_PATH))


def _get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(_db_path(), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db() -> None:
    """Create the vendor_calls and rate_limit_state tables if missing."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS vendor_calls (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            called_at     TEXT NOT NULL,
            service       TEXT NOT NULL,
            action        TEXT NOT NULL,
            outcome       TEXT NOT NULL,
            vendor_status INTEGER,
            elapsed_ms    INTEGER NOT NULL,
            error         TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_vendor_calls_at ON vendor_calls (called_at);
        CREATE TABLE IF NOT EXISTS rate_limit_state (
            service        TEXT PRIMARY KEY,
            backoff_until  REAL NOT NULL DEFAULT 0,
            last_error     TEXT,
            updated_at     TEXT NOT NULL
        );
    """)
    conn.commit()
    conn.close()


def record_call(
    service: str,
    action: str,
    outcome: str,
    elapsed_ms: int,
    vendor_status: int | None = None,
    error: str | None = None,
) -> None:
    conn = _get_db()
    conn.execute(
        "INSERT INTO vendor_calls "
        "(called_at, service, action, outcome, vendor_status, elapsed_ms, error) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (_now_iso(), service, action, outcome, vendor_status, elapsed_ms, error),
    )
    conn.commit()
    conn.close()


@contextmanager
def track(service: str, action: str):
    """Time one vendor call and store its outcome.

    Yields a dict; the caller sets ``call["vendor_status"]`` once the
    response body is parsed. An exception carrying a ``status`` attribute
    has that code recorded instead.
    """
    call: dict = {"vendor_status": None}
    t0 = time.monotonic()
    try:
        yield call
    except Exception as exc:
        status = getattr(exc, "status", None)
        if status is None:
            status = call["vendor_status"]
        record_call(
            service, action, "error", int((time.monotonic() - t0) * 1000),
            vendor_status=status, error=str(exc),
        )
        raise
    record_call(
        service, action, "success", int((time.monotonic() - t0) * 1000),
        vendor_status=call["vendor_status"],
    )


def get_summary(hours: int = 24) -> list[dict]:
    """Call counts and latency per action and outcome over the last N hours."""
    cutoff = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
    conn = _get_db()
    rows = conn.execute(
        "SELECT service, action, outcome, COUNT(*) AS cnt, "
        "AVG(elapsed_ms) AS avg_ms, MAX(elapsed_ms) AS max_ms "
        "FROM vendor_calls WHERE called_at >= ? "
        "GROUP BY service, action, outcome ORDER BY cnt DESC",
        (cutoff,),
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def get_status_breakdown(hours: int = 24) -> dict[str, int]:
    """How often each non-zero vendor status came back, keyed by code."""
    cutoff = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
    conn = _get_db()
    rows = conn.execute(
        "SELECT vendor_status, COUNT(*) AS cnt FROM vendor_calls "
        "WHERE called_at >= ? AND vendor_status IS NOT NULL AND vendor_status != 0 "
        "GROUP BY vendor_status ORDER BY cnt DESC",
        (cutoff,),
    ).fetchall()
    conn.close()
    return {str(r["vendor_status"]): r["cnt"] for r in rows}


def get_recent(limit: int = 50) -> list[dict]:
    conn = _get_db()
    rows = conn.execute(
        "SELECT * FROM vendor_calls ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]


# ── Shared Backoff ───────────────────────────────────────────────────────

def get_backoff_until(service: str) -> float:
    """Epoch seconds before which no call should go out (0 = none)."""
    conn = _get_db()
    row = conn.execute(
        "SELECT backoff_until FROM rate_limit_state WHERE service = ?", (service,)
    ).fetchone()
    conn.close()
    return float(row["backoff_until"]) if row else 0.0


def set_backoff_until(service: str, until: float, error: str | None = None) -> None:
    conn = _get_db()
    conn.execute(
        "INSERT INTO rate_limit_state (service, backoff_until, last_error, updated_at) "
        "VALUES (?, ?, ?, ?) "
        "ON CONFLICT (service) DO UPDATE SET backoff_until = excluded.backoff_until, "
        "last_error = excluded.last_error, updated_at = excluded.updated_at",
        (service, until, error, _now_iso()),
    )
    conn.commit()
    conn.close()
