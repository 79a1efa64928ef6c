"""Tests for the database module."""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from iocweave.database import (
    cleanup_old_sessions,
    get_stats,
    init_db,
    list_sessions,
    load_historical_indicators,
    save_session,
)
from iocweave.models import AnalysisReport, Indicator, IndicatorType, ThreatActor


@pytest.fixture(autouse=True)
def tmp_db(tmp_path, monkeypatch):
    """Use a temporary database for each test."""
    db_path = tmp_path / "test.db"
    data_dir = tmp_path

    monkeypatch.setattr("iocweave.database.DB_PATH", db_path)
    monkeypatch.setattr("iocweave.database.DATA_DIR", data_dir)
    init_db()
    return db_path


def _report(completed_at, values=("1.2.3.4",), source="FeedA", error=None):
    indicators = [
        Indicator(
            value=v,
            kind=IndicatorType.IP_ADDRESS,
            source=source,
            confidence=80,
            created_at=completed_at,
            last_seen_at=completed_at,
            tags=["c2"],
            actor_name="APT28",
        )
        for v in values
    ]
    return AnalysisReport(
        completed_at=completed_at,
        processing_time_ms=42,
        total_indicators=len(indicators),
        total_threat_actors=1,
        indicators=indicators,
        actors=[ThreatActor(name="APT28", aliases=["Sofacy"])],
        error_message=error,
    )


NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestInitDb:
    def test_creates_tables(self, tmp_db):
        conn = sqlite3.connect(str(tmp_db))
        tables = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        conn.close()
        assert {"sessions", "session_indicators", "session_actors"} <= tables

    def test_idempotent(self):
        init_db()
        init_db()


class TestSaveSession:
    def test_returns_timestamp_id(self):
        assert save_session(_report(NOW)) == "20240501-120000"
        assert list_sessions()[0]["session_id"] == "20240501-120000"

    def test_same_second_gets_suffix(self):
        first = save_session(_report(NOW))
        second = save_session(_report(NOW))
        third = save_session(_report(NOW))

        assert first == "20240501-120000"
        assert second == "20240501-120000-2"
        assert third == "20240501-120000-3"

    def test_stores_summary_json(self, tmp_db):
        save_session(_report(NOW, error="feed down"))

        conn = sqlite3.connect(str(tmp_db))
        summary, payload = conn.execute(
            "SELECT s.summary_json, a.payload FROM sessions s "
            "JOIN session_actors a ON a.session_id = s.session_id"
        ).fetchone()
        conn.close()

        assert json.loads(summary)["error_message"] == "feed down"
        assert json.loads(payload)["aliases"] == ["Sofacy"]


class TestHistoricalIndicators:
    def test_round_trip(self):
        save_session(_report(NOW, values=("1.2.3.4", "5.6.7.8")))

        indicators = load_historical_indicators()

        assert [i.value for i in indicators] == ["1.2.3.4", "5.6.7.8"]
        first = indicators[0]
        assert first.kind == IndicatorType.IP_ADDRESS
        assert first.tags == ["c2"]
        assert first.actor_name == "APT28"
        assert first.created_at == NOW

    def test_newest_sessions_only(self):
        save_session(_report(NOW - timedelta(days=1), values=("10.0.0.1",)))
        save_session(_report(NOW, values=("10.0.0.2",)))

        indicators = load_historical_indicators(max_sessions=1)

        assert [i.value for i in indicators] == ["10.0.0.2"]


class TestListSessions:
    def test_newest_first(self):
        save_session(_report(NOW - timedelta(hours=1)))
        save_session(_report(NOW, error="partial"))

        sessions = list_sessions()

        assert [s["session_id"] for s in sessions] == [
            "20240501-120000",
            "20240501-110000",
        ]
        assert sessions[0]["completed_at"] == NOW
        assert sessions[0]["error_message"] == "partial"
        assert sessions[0]["total_indicators"] == 1

    def test_limit(self):
        for hours in range(5):
            save_session(_report(NOW - timedelta(hours=hours)))
        assert len(list_sessions(limit=3)) == 3


class TestGetStats:
    def test_empty_db(self):
        stats = get_stats()
        assert stats["sessions"] == 0
        assert stats["total_indicators"] == 0
        assert stats["last_session"] is None

    def test_populated(self):
        save_session(_report(NOW - timedelta(hours=1), source="FeedA"))
        save_session(_report(NOW, values=("1.1.1.1", "2.2.2.2"), source="FeedB"))

        stats = get_stats()

        assert stats["sessions"] == 2
        assert stats["total_indicators"] == 3
        assert stats["by_source"] == {"FeedA": 1, "FeedB": 2}
        assert stats["by_type"] == {"IpAddress": 3}
        assert stats["last_session"] == "20240501-120000"


class TestCleanup:
    def test_removes_old_sessions(self):
        save_session(_report(NOW - timedelta(days=45)))
        save_session(_report(NOW - timedelta(days=1)))

        removed = cleanup_old_sessions(max_sessions=100, max_days=30, now=NOW)

        assert removed == 1
        assert [s["session_id"] for s in list_sessions()] == ["20240430-120000"]

    def test_keeps_newest_n(self):
        for hours in range(5):
            save_session(_report(NOW - timedelta(hours=hours)))

        removed = cleanup_old_sessions(max_sessions=2, max_days=30, now=NOW)

        assert removed == 3
        assert len(list_sessions()) == 2

    def test_indicators_removed_with_session(self):
        save_session(_report(NOW - timedelta(days=45)))

        cleanup_old_sessions(now=NOW)

        assert get_stats()["total_indicators"] == 0

    def test_nothing_to_remove(self):
        save_session(_report(NOW))
        assert cleanup_old_sessions(now=NOW) == 0
