"""SQLite store for past analysis sessions."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone

from .config import DATA_DIR, DB_PATH
from .models import AnalysisReport, Indicator, IndicatorType
from .reports import actor_to_dict, report_to_dict

SESSION_ID_FORMAT = "%Y%m%d-%H%M%S"


def _get_connection() -> sqlite3.Connection:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they don't exist."""
    conn = _get_connection()
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id         TEXT PRIMARY KEY,
                completed_at       TEXT NOT NULL,
                processing_time_ms INTEGER NOT NULL,
                total_indicators   INTEGER NOT NULL,
                total_actors       INTEGER NOT NULL,
                total_correlations INTEGER NOT NULL,
                total_pivots       INTEGER NOT NULL,
                error_message      TEXT,
                summary_json       TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS session_indicators (
                id             INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id     TEXT NOT NULL,
                value          TEXT NOT NULL,
                kind           TEXT NOT NULL,
                source         TEXT NOT NULL,
                confidence     INTEGER NOT NULL,
                created_at     TEXT NOT NULL,
                last_seen_at   TEXT NOT NULL,
                tags           TEXT NOT NULL,
                actor_name     TEXT,
                malware_family TEXT,
                description    TEXT,
                FOREIGN KEY (session_id) REFERENCES sessions(session_id)
                    ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS session_actors (
                id         INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                name       TEXT NOT NULL,
                payload    TEXT NOT NULL,
                FOREIGN KEY (session_id) REFERENCES sessions(session_id)
                    ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_session_indicators_session
                ON session_indicators(session_id);

            CREATE INDEX IF NOT EXISTS idx_session_actors_session
                ON session_actors(session_id);
        """)
        conn.commit()
    finally:
        conn.close()


def _unique_session_id(conn: sqlite3.Connection, base: str) -> str:
    session_id = base
    suffix = 2
    while conn.execute(
        "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
    ).fetchone():
        session_id = f"{base}-{suffix}"
        suffix += 1
    return session_id


def save_session(report: AnalysisReport) -> str:
    """Store a finished run with its indicators and actors. Returns the session id."""
    completed = report.completed_at or datetime.now(timezone.utc)
    conn = _get_connection()
    try:
        session_id = _unique_session_id(conn, completed.strftime(SESSION_ID_FORMAT))
        conn.execute(
            """
            INSERT INTO sessions (
                session_id, completed_at, processing_time_ms, total_indicators,
                total_actors, total_correlations, total_pivots, error_message,
                summary_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                completed.isoformat(),
                report.processing_time_ms,
                report.total_indicators,
                report.total_threat_actors,
                len(report.correlations),
                len(report.infrastructure_pivots),
                report.error_message,
                json.dumps(report_to_dict(report)),
            ),
        )
        conn.executemany(
            """
            INSERT INTO session_indicators (
                session_id, value, kind, source, confidence, created_at,
                last_seen_at, tags, actor_name, malware_family, description
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    session_id,
                    i.value,
                    i.kind.value,
                    i.source,
                    i.confidence,
                    i.created_at.isoformat(),
                    i.last_seen_at.isoformat(),
                    json.dumps(i.tags),
                    i.actor_name,
                    i.malware_family,
                    i.description,
                )
                for i in report.indicators
            ],
        )
        conn.executemany(
            "INSERT INTO session_actors (session_id, name, payload) VALUES (?, ?, ?)",
            [(session_id, a.name, json.dumps(actor_to_dict(a))) for a in report.actors],
        )
        conn.commit()
        return session_id
    finally:
        conn.close()


def _row_to_indicator(row: tuple) -> Indicator:
    return Indicator(
        value=row[0],
        kind=IndicatorType(row[1]),
        source=row[2],
        confidence=row[3],
        created_at=datetime.fromisoformat(row[4]),
        last_seen_at=datetime.fromisoformat(row[5]),
        tags=json.loads(row[6]),
        actor_name=row[7],
        malware_family=row[8],
        description=row[9],
    )


def load_historical_indicators(max_sessions: int = 10) -> list[Indicator]:
    """Indicators from the most recent *max_sessions* sessions, newest first."""
    conn = _get_connection()
    try:
        rows = conn.execute(
            """
            SELECT i.value, i.kind, i.source, i.confidence, i.created_at,
                   i.last_seen_at, i.tags, i.actor_name, i.malware_family,
                   i.description
            FROM session_indicators i
            WHERE i.session_id IN (
                SELECT session_id FROM sessions
                ORDER BY session_id DESC
                LIMIT ?
            )
            ORDER BY i.session_id DESC, i.id
            """,
            (max_sessions,),
        ).fetchall()
        return [_row_to_indicator(row) for row in rows]
    finally:
        conn.close()


def list_sessions(limit: int = 20) -> list[dict]:
    """Most recent sessions first."""
    conn = _get_connection()
    try:
        rows = conn.execute(
            """
            SELECT session_id, completed_at, processing_time_ms, total_indicators,
                   total_actors, total_correlations, total_pivots, error_message
            FROM sessions
            ORDER BY session_id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [
            {
                "session_id": row[0],
                "completed_at": datetime.fromisoformat(row[1]),
                "processing_time_ms": row[2],
                "total_indicators": row[3],
                "total_actors": row[4],
                "total_correlations": row[5],
                "total_pivots": row[6],
                "error_message": row[7],
            }
            for row in rows
        ]
    finally:
        conn.close()


def get_stats() -> dict:
    """Return database statistics."""
    conn = _get_connection()
    try:
        session_count = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]

        indicator_count = conn.execute(
            "SELECT COUNT(*) FROM session_indicators"
        ).fetchone()[0]

        source_counts = dict(
            conn.execute(
                "SELECT source, COUNT(*) FROM session_indicators GROUP BY source"
            ).fetchall()
        )

        type_counts = dict(
            conn.execute(
                "SELECT kind, COUNT(*) FROM session_indicators GROUP BY kind"
            ).fetchall()
        )

        last = conn.execute(
            "SELECT session_id FROM sessions ORDER BY session_id DESC LIMIT 1"
        ).fetchone()

        return {
            "sessions": session_count,
            "total_indicators": indicator_count,
            "by_source": source_counts,
            "by_type": type_counts,
            "last_session": last[0] if last else None,
        }
    finally:
        conn.close()


def cleanup_old_sessions(
    max_sessions: int = 100,
    max_days: int = 30,
    now: datetime | None = None,
) -> int:
    """Drop sessions beyond the newest *max_sessions* or older than *max_days*.

    Returns the number of sessions removed.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=max_days)
    conn = _get_connection()
    try:
        rows = conn.execute(
            "SELECT session_id, completed_at FROM sessions ORDER BY session_id DESC"
        ).fetchall()

        doomed = [
            session_id
            for index, (session_id, completed_at) in enumerate(rows)
            if index >= max_sessions or datetime.fromisoformat(completed_at) < cutoff
        ]
        conn.executemany(
            "DELETE FROM sessions WHERE session_id = ?",
            [(session_id,) for session_id in doomed],
        )
        conn.commit()
        return len(doomed)
    finally:
        conn.close()

