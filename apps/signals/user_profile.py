# apps/signals/user_profile.py
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import settings
from db import as_utc, batch_transaction, insert_for
from models import (
    Author,
    Block,
    CatalogEdition,
    CatalogItem,
    ItemAuthor,
    ItemSubject,
    ReadingAggregate,
    UserEvent,
    UserProfile,
)
from vector_math import normalize, subtract_scaled, weighted_average

log = logging.getLogger("profile")

DAYS_PER_YEAR = 365.0
SHELF_MULTIPLIERS = {
    "read": 1.0,
    "currently-reading": 0.8,
    "to-read": 0.3,
    "dnf": -0.5,
}


@dataclass(frozen=True)
class Anchor:
    item_id: int
    title: str
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {"item_id": self.item_id, "title": self.title, "weight": self.weight}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Anchor":
        return cls(item_id=int(raw["item_id"]), title=str(raw.get("title") or ""), weight=float(raw["weight"]))


@dataclass(frozen=True)
class ReadingActivity:
    total_ms: float = 0.0
    last_read_at: Optional[datetime] = None
    last_30d_ms: float = 0.0


@dataclass
class ProfileEvent:
    item_id: int
    title: str
    shelf: Optional[str]
    rating: Optional[float]
    finished_at: Optional[date]
    embedding: List[float]
    activity: Optional[ReadingActivity] = None


@dataclass
class UserProfileData:
    user_id: str
    profile_vec: List[float] = field(default_factory=list)
    anchors: List[Anchor] = field(default_factory=list)
    updated_at: Optional[datetime] = None


@dataclass
class TasteSummary:
    top_authors: List[str]
    top_subjects: List[str]
    read_count: int
    avg_rating: Optional[float]


def _to_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, dt_time.min, tzinfo=timezone.utc)


def _recency_weight(when: Optional[datetime], now: datetime, half_life_years: float) -> float:
    if when is None or half_life_years <= 0:
        return 1.0
    age_years = max((now - when).total_seconds() / 86400.0, 0.0) / DAYS_PER_YEAR
    return math.pow(0.5, age_years / half_life_years)


def event_weight(
    shelf: Optional[str],
    rating: Optional[float],
    finished_at=None,
    activity: Optional[ReadingActivity] = None,
    *,
    now: Optional[datetime] = None,
    half_life_years: Optional[float] = None,
    recent_boost: Optional[float] = None,
) -> float:
    """
    Signed weight of one event. Magnitude comes from rating, recency,
    reading time and recent activity; the shelf sets scale and sign.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    half_life_years = settings.profile_half_life_years if half_life_years is None else half_life_years
    recent_boost = settings.profile_recent_activity_boost if recent_boost is None else recent_boost

    magnitude = 1.0
    if rating is not None:
        magnitude *= math.pow(2, (rating - 3) / 2)

    when = _to_datetime(finished_at)
    if when is None and activity is not None:
        when = _to_datetime(activity.last_read_at)
    if when is not None:
        magnitude *= _recency_weight(when, now, half_life_years)

    if activity is not None:
        if activity.total_ms and activity.total_ms > 0:
            hours = activity.total_ms / 3_600_000
            magnitude *= 1 + min(1.0, math.log10(hours + 1))
        if activity.last_30d_ms and activity.last_30d_ms > 0:
            magnitude *= recent_boost

    return magnitude * SHELF_MULTIPLIERS.get(shelf or "", 1.0)


def compose_profile_vector(
    events: Sequence[ProfileEvent],
    weights: Sequence[float],
    negative_damping: Optional[float] = None,
) -> List[float]:
    """Positive weighted mean, nudged away from the negative mean, L2-normalized."""
    damping = settings.profile_negative_damping if negative_damping is None else negative_damping
    positive = [(e, w) for e, w in zip(events, weights) if w > 0]
    negative = [(e, w) for e, w in zip(events, weights) if w < 0]
    if not positive:
        return []

    vec = weighted_average([e.embedding for e, _ in positive], [w for _, w in positive])
    if negative:
        neg = weighted_average([e.embedding for e, _ in negative], [abs(w) for _, w in negative])
        vec = subtract_scaled(vec, neg, damping)
    return normalize(vec)


def _activity_by_item(db: Session, user_id: str, item_ids: Sequence[int]) -> Dict[int, ReadingActivity]:
    if not item_ids:
        return {}
    rows = (
        db.query(
            CatalogEdition.item_id,
            ReadingAggregate.total_ms,
            ReadingAggregate.last_read_at,
            ReadingAggregate.last_30d_ms,
        )
        .join(ReadingAggregate, ReadingAggregate.asin == CatalogEdition.asin)
        .filter(ReadingAggregate.user_id == user_id, CatalogEdition.item_id.in_(list(item_ids)))
        .all()
    )
    out: Dict[int, ReadingActivity] = {}
    for item_id, total_ms, last_read_at, last_30d_ms in rows:
        current = out.get(item_id)
        seen = as_utc(last_read_at)
        # most recently read edition wins
        if current is None or (seen is not None and (current.last_read_at is None or seen > current.last_read_at)):
            out[item_id] = ReadingActivity(float(total_ms or 0), seen, float(last_30d_ms or 0))
    return out


def load_profile_events(db: Session, user_id: str, limit: Optional[int] = None) -> List[ProfileEvent]:
    limit = limit or settings.profile_max_events
    blocked = select(Block.item_id).where(Block.user_id == user_id, Block.item_id.isnot(None))
    rows = (
        db.query(UserEvent, CatalogItem.title, CatalogItem.embedding)
        .join(CatalogItem, CatalogItem.id == UserEvent.item_id)
        .filter(
            UserEvent.user_id == user_id,
            CatalogItem.embedding.isnot(None),
            ~UserEvent.item_id.in_(blocked),
        )
        .order_by(
            func.coalesce(UserEvent.rating, 3).desc(),
            UserEvent.finished_at.desc().nulls_last(),
            UserEvent.created_at.desc(),
        )
        .limit(limit)
        .all()
    )
    activity = _activity_by_item(db, user_id, [ev.item_id for ev, _t, _e in rows])

    events: List[ProfileEvent] = []
    expected_dim: Optional[int] = None
    for ev, title, embedding in rows:
        vec = [float(x) for x in (embedding or [])]
        if not vec:
            continue
        if expected_dim is None:
            expected_dim = len(vec)
        elif len(vec) != expected_dim:
            log.debug("profile_skip_vector_dim_mismatch item=%s expected=%d actual=%d", ev.item_id, expected_dim, len(vec))
            continue
        events.append(
            ProfileEvent(
                item_id=ev.item_id,
                title=title,
                shelf=ev.shelf,
                rating=ev.rating,
                finished_at=ev.finished_at,
                embedding=vec,
                activity=activity.get(ev.item_id),
            )
        )
    return events


def _store_profile(db: Session, profile: UserProfileData) -> None:
    with batch_transaction(db, "profile", 1):
        stmt = insert_for(db, UserProfile).values(
            user_id=profile.user_id,
            profile_vec=profile.profile_vec,
            anchors=[a.to_dict() for a in profile.anchors],
            updated_at=profile.updated_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserProfile.user_id],
            set_={
                "profile_vec": stmt.excluded.profile_vec,
                "anchors": stmt.excluded.anchors,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)


def _clear_profile(db: Session, user_id: str, now: datetime) -> UserProfileData:
    if db.get(UserProfile, user_id) is None:
        return UserProfileData(user_id=user_id)
    profile = UserProfileData(user_id=user_id, updated_at=now)
    _store_profile(db, profile)
    log.info("profile_cleared user=%s", user_id)
    return profile


def build_user_profile(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    anchor_count: Optional[int] = None,
) -> UserProfileData:
    """
    Build and persist the user's taste vector and anchors. With no usable
    events the result is empty; a previously stored profile is emptied too.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    anchor_count = settings.profile_anchor_count if anchor_count is None else anchor_count
    started = time.monotonic()

    events = load_profile_events(db, user_id)
    if not events:
        log.warning("profile_no_events_with_embeddings user=%s", user_id)
        return _clear_profile(db, user_id, now)

    weights = [event_weight(e.shelf, e.rating, e.finished_at, e.activity, now=now) for e in events]
    vec = compose_profile_vector(events, weights)
    if not vec:
        log.warning("profile_no_positive_events user=%s events=%d", user_id, len(events))
        return _clear_profile(db, user_id, now)

    ranked = sorted(
        ((e, w) for e, w in zip(events, weights) if w > 0),
        key=lambda pair: pair[1],
        reverse=True,
    )
    anchors = [Anchor(e.item_id, e.title, w) for e, w in ranked[:anchor_count]]

    profile = UserProfileData(user_id=user_id, profile_vec=vec, anchors=anchors, updated_at=now)
    _store_profile(db, profile)
    log.info(
        "profile_build_ok user=%s events=%d positive=%d anchors=%d elapsed=%.2fs",
        user_id, len(events), len(ranked), len(anchors), time.monotonic() - started,
    )
    return profile


def get_user_profile(db: Session, user_id: str) -> Optional[UserProfileData]:
    row = db.get(UserProfile, user_id)
    if row is None:
        return None
    return UserProfileData(
        user_id=row.user_id,
        profile_vec=[float(x) for x in (row.profile_vec or [])],
        anchors=[Anchor.from_dict(a) for a in (row.anchors or [])],
        updated_at=as_utc(row.updated_at),
    )


def get_or_build_user_profile(
    db: Session, user_id: str, now: Optional[datetime] = None
) -> Optional[UserProfileData]:
    existing = get_user_profile(db, user_id)
    if existing and existing.profile_vec:
        return existing
    profile = build_user_profile(db, user_id, now=now)
    return profile if profile.profile_vec else None


def profile_needs_refresh(db: Session, user_id: str) -> bool:
    """True when there is no profile or any event/aggregate postdates it."""
    row = db.get(UserProfile, user_id)
    if row is None:
        return True
    built_at = as_utc(row.updated_at)

    last_event = db.query(func.max(UserEvent.created_at)).filter(UserEvent.user_id == user_id).scalar()
    if last_event is not None and as_utc(last_event) > built_at:
        return True

    last_agg = (
        db.query(func.max(ReadingAggregate.updated_at)).filter(ReadingAggregate.user_id == user_id).scalar()
    )
    return last_agg is not None and as_utc(last_agg) > built_at


def get_user_taste_summary(db: Session, user_id: str, top_n: int = 5) -> TasteSummary:
    read_filter = (UserEvent.user_id == user_id, UserEvent.shelf == "read")

    count = func.count().label("cnt")
    top_authors = (
        db.query(Author.name, count)
        .join(ItemAuthor, ItemAuthor.author_id == Author.id)
        .join(UserEvent, UserEvent.item_id == ItemAuthor.item_id)
        .filter(*read_filter)
        .group_by(Author.id, Author.name)
        .order_by(count.desc(), Author.name)
        .limit(top_n)
        .all()
    )
    top_subjects = (
        db.query(ItemSubject.subject, count)
        .join(UserEvent, UserEvent.item_id == ItemSubject.item_id)
        .filter(*read_filter)
        .group_by(ItemSubject.subject)
        .order_by(count.desc(), ItemSubject.subject)
        .limit(top_n)
        .all()
    )
    read_count, avg_rating = db.query(func.count(), func.avg(UserEvent.rating)).filter(*read_filter).one()

    return TasteSummary(
        top_authors=[name for name, _ in top_authors],
        top_subjects=[subject for subject, _ in top_subjects],
        read_count=int(read_count or 0),
        avg_rating=float(avg_rating) if avg_rating is not None else None,
    )
