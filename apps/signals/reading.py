# apps/signals/reading.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from config import settings
from db import as_utc, batch_transaction
from models import CatalogEdition, ReadingAggregate, ReadingDay, ReadingSession, UserEvent

log = logging.getLogger("reading")

KINDLE = "kindle"
CURRENTLY_READING = "currently-reading"
STALE_NOTE = "auto-dnf-stale"
SESSION_NOTE = "reading session"

# a later shelf never downgrades one of these
TERMINAL_SHELVES = ("read", "dnf")


@dataclass
class AggregateStats:
    aggregates: int = 0
    streak: int = 0
    events_upserted: int = 0
    auto_dnfs: int = 0


def session_duration_ms(
    duration_ms: Optional[float],
    start_at: datetime,
    end_at: Optional[datetime],
) -> float:
    if duration_ms is not None:
        return float(duration_ms)
    if end_at is None:
        return 0.0
    return max((as_utc(end_at) - as_utc(start_at)).total_seconds() * 1000.0, 0.0)


def current_streak(days: Iterable[date]) -> int:
    """Consecutive distinct days ending at the most recent one."""
    unique = sorted(set(days), reverse=True)
    if not unique:
        return 0
    streak = 1
    prev = unique[0]
    for day in unique[1:]:
        if (prev - day).days != 1:
            break
        streak += 1
        prev = day
    return streak


def _later(a: Optional[date], b: Optional[date]) -> Optional[date]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _rebuild_aggregates(db: Session, user_id: str, now: datetime) -> List[ReadingAggregate]:
    window_start = now - timedelta(days=30)
    sessions = db.query(ReadingSession).filter(ReadingSession.user_id == user_id).all()

    grouped: Dict[str, List[ReadingSession]] = {}
    for s in sessions:
        grouped.setdefault(s.asin, []).append(s)

    for stale in db.query(ReadingAggregate).filter(ReadingAggregate.user_id == user_id):
        db.delete(stale)
    db.flush()

    aggregates = []
    for asin, rows in sorted(grouped.items()):
        durations = [session_duration_ms(r.duration_ms, r.start_at, r.end_at) for r in rows]
        total = sum(durations)
        avg = total / len(durations) if durations else 0.0
        agg = ReadingAggregate(
            user_id=user_id,
            asin=asin,
            total_ms=total,
            sessions=len(rows),
            last_read_at=max(as_utc(r.end_at or r.start_at) for r in rows),
            avg_session_ms=avg or None,
            max_session_ms=max(durations) if durations else None,
            last_30d_ms=sum(d for d, r in zip(durations, rows) if as_utc(r.start_at) >= window_start),
            streak_days=0,
            updated_at=now,
        )
        db.add(agg)
        aggregates.append(agg)
    return aggregates


def upsert_session_event(
    db: Session,
    user_id: str,
    item_id: int,
    finished_at: Optional[date],
    notes: Optional[str] = SESSION_NOTE,
) -> UserEvent:
    existing = db.get(UserEvent, (user_id, item_id, KINDLE))
    if existing is None:
        event = UserEvent(
            user_id=user_id,
            item_id=item_id,
            source=KINDLE,
            shelf=CURRENTLY_READING,
            finished_at=finished_at,
            notes=notes,
        )
        db.add(event)
        return event

    if existing.shelf not in TERMINAL_SHELVES:
        existing.shelf = CURRENTLY_READING
    existing.finished_at = _later(existing.finished_at, finished_at)
    existing.notes = notes or existing.notes
    return existing


def aggregate_reading(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    stale_days: Optional[int] = None,
) -> AggregateStats:
    """
    Rebuild the user's reading aggregates from sessions, refresh the streak,
    mirror aggregated ASINs into currently-reading events and retire stale ones.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    stale_days = settings.reading_stale_days if stale_days is None else stale_days
    started = time.monotonic()
    stats = AggregateStats()

    with batch_transaction(db, "reading_aggregate", 1):
        aggregates = _rebuild_aggregates(db, user_id, now)
        stats.streak = current_streak(
            day for (day,) in db.query(ReadingDay.day).filter(ReadingDay.user_id == user_id)
        )
        for agg in aggregates:
            agg.streak_days = stats.streak
        stats.aggregates = len(aggregates)

    last_read_by_asin = {agg.asin: as_utc(agg.last_read_at) for agg in aggregates}
    item_by_asin: Dict[str, int] = {}
    if last_read_by_asin:
        item_by_asin = {
            asin: item_id
            for asin, item_id in db.query(CatalogEdition.asin, CatalogEdition.item_id).filter(
                CatalogEdition.asin.in_(list(last_read_by_asin))
            )
        }
    unresolved = len(last_read_by_asin) - len(item_by_asin)
    if unresolved:
        log.info("reading_unresolved_asins user=%s count=%d", user_id, unresolved)

    # several editions may share an item; keep the latest activity
    last_read_by_item: Dict[int, datetime] = {}
    for asin, item_id in item_by_asin.items():
        seen = last_read_by_asin[asin]
        if seen is None:
            continue
        current = last_read_by_item.get(item_id)
        if current is None or seen > current:
            last_read_by_item[item_id] = seen

    with batch_transaction(db, "reading_events", 2):
        for item_id in sorted(set(item_by_asin.values())):
            seen = last_read_by_item.get(item_id)
            upsert_session_event(db, user_id, item_id, seen.date() if seen else None)
            stats.events_upserted += 1

    cutoff = now - timedelta(days=stale_days)
    with batch_transaction(db, "reading_auto_dnf", 3):
        candidates = (
            db.query(UserEvent)
            .filter(
                UserEvent.user_id == user_id,
                UserEvent.source == KINDLE,
                UserEvent.shelf == CURRENTLY_READING,
            )
            .all()
        )
        for event in candidates:
            seen = last_read_by_item.get(event.item_id)
            if seen is None or seen >= cutoff:
                continue
            event.shelf = "dnf"
            event.finished_at = seen.date()
            event.notes = " | ".join(part for part in (event.notes, STALE_NOTE) if part).strip()
            stats.auto_dnfs += 1

    log.info(
        "reading_aggregate_ok user=%s aggregates=%d streak=%d events=%d auto_dnfs=%d elapsed=%.2fs",
        user_id, stats.aggregates, stats.streak, stats.events_upserted, stats.auto_dnfs,
        time.monotonic() - started,
    )
    return stats
