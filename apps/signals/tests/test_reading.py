"""Tests for reading-session aggregation."""
from datetime import date, datetime, timedelta, timezone

import pytest

from factories import NOW, add_edition, add_event, add_item
from models import ReadingAggregate, ReadingDay, ReadingSession, UserEvent
from reading import STALE_NOTE, aggregate_reading, current_streak, session_duration_ms


def test_current_streak_counts_back_from_latest_day():
    today = date(2026, 10, 19)
    days = [today, today - timedelta(days=1), today - timedelta(days=2), today - timedelta(days=5), today]
    assert current_streak(days) == 3
    assert current_streak([]) == 0
    assert current_streak([today - timedelta(days=10)]) == 1


def test_session_duration_prefers_recorded_value():
    start = NOW
    assert session_duration_ms(1234, start, None) == 1234.0
    assert session_duration_ms(None, start, start + timedelta(minutes=2)) == 120_000.0
    assert session_duration_ms(None, start, start - timedelta(minutes=2)) == 0.0
    assert session_duration_ms(None, start, None) == 0.0


def _session(db, asin, start, minutes, duration_ms=None):
    db.add(
        ReadingSession(
            user_id="u1",
            asin=asin,
            start_at=start,
            end_at=start + timedelta(minutes=minutes),
            duration_ms=duration_ms,
            source="ereader_active",
        )
    )


@pytest.fixture
def reading_history(db):
    active = add_item(db, "Active book")
    stale = add_item(db, "Stale book")
    finished = add_item(db, "Finished book")
    add_edition(db, active, asin="B0ACTIVE")
    add_edition(db, stale, asin="B0STALE")
    add_edition(db, finished, asin="B0DONE")
    add_event(db, "u1", finished, shelf="read", source="kindle", finished_at=date(2026, 1, 1))

    _session(db, "B0ACTIVE", NOW - timedelta(days=2), 30)
    _session(db, "B0ACTIVE", NOW - timedelta(days=40), 60, duration_ms=600_000)
    _session(db, "B0STALE", NOW - timedelta(days=60), 10)
    _session(db, "B0DONE", NOW - timedelta(days=3), 10)
    _session(db, "B0UNKNOWN", NOW - timedelta(days=1), 10)
    for offset in (0, 1, 2, 4):
        db.add(ReadingDay(user_id="u1", day=(NOW - timedelta(days=offset)).date(), source="ri_day_units"))
    db.commit()
    return active, stale, finished


def test_aggregate_reading_end_to_end(db, reading_history):
    active, stale, finished = reading_history

    stats = aggregate_reading(db, "u1", now=NOW, stale_days=30)

    assert stats.aggregates == 4
    assert stats.streak == 3
    assert stats.events_upserted == 3
    assert stats.auto_dnfs == 1

    agg = db.get(ReadingAggregate, ("u1", "B0ACTIVE"))
    assert agg.sessions == 2
    assert agg.total_ms == pytest.approx(30 * 60_000 + 600_000)
    assert agg.last_30d_ms == pytest.approx(30 * 60_000)
    assert agg.max_session_ms == pytest.approx(30 * 60_000)
    assert agg.streak_days == 3

    current = db.get(UserEvent, ("u1", active.id, "kindle"))
    assert current.shelf == "currently-reading"
    assert current.finished_at == (NOW - timedelta(days=2)).date()

    retired = db.get(UserEvent, ("u1", stale.id, "kindle"))
    assert retired.shelf == "dnf"
    assert STALE_NOTE in retired.notes

    done = db.get(UserEvent, ("u1", finished.id, "kindle"))
    assert done.shelf == "read"
    assert done.finished_at == (NOW - timedelta(days=3)).date()


def test_aggregate_reading_is_repeatable(db, reading_history):
    aggregate_reading(db, "u1", now=NOW, stale_days=30)
    again = aggregate_reading(db, "u1", now=NOW, stale_days=30)

    assert again.aggregates == 4
    assert again.auto_dnfs == 0
    assert db.query(ReadingAggregate).filter(ReadingAggregate.user_id == "u1").count() == 4


def test_user_without_sessions_has_nothing_to_do(db):
    stats = aggregate_reading(db, "nobody", now=datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert (stats.aggregates, stats.events_upserted, stats.auto_dnfs) == (0, 0, 0)
