# apps/signals/identity.py
from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased, sessionmaker

from config import settings
from db import as_utc, dialect_name, session_scope
from errors import SelfMergeError, TransientStoreError, ValidationError
from models import (
    Author,
    Block,
    CatalogEdition,
    CatalogItem,
    GraphFeature,
    ItemAuthor,
    ItemSubject,
    MergeLog,
    RatingStat,
    ResolverCache,
    ResolverLog,
    UserEvent,
    WorkQuality,
)

log = logging.getLogger("merge")

# priority order; the first shared identifier decides the reason
STRONG_IDENTIFIERS = ("isbn13", "isbn10", "google_volume_id", "asin")

_WORD_RE = re.compile(r"[0-9a-z]+")
DUPLICATE_LIMIT = 10
DUPLICATE_SCAN_BATCH = 500

# too common to narrow a title prefilter
STOP_WORDS = frozenset({
    "the", "and", "for", "with", "from", "into", "that", "this", "are", "was",
    "its", "not", "but", "you", "your", "our", "how", "why", "what", "who",
})


@dataclass(frozen=True)
class MergeInfo:
    item_id_from: int
    item_id_to: int
    reason: str
    editions_moved: int
    events_moved: int = 0
    events_discarded: int = 0


@dataclass(frozen=True)
class MergeHistoryEntry:
    item_id_from: int
    reason: Optional[str]
    editions_moved: int
    merged_at: Optional[datetime]


@dataclass
class DedupeReport:
    merged: List[MergeInfo] = field(default_factory=list)
    failed: List[Tuple[int, int, str]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# fuzzy matching


def _words(text: Optional[str]) -> List[str]:
    return _WORD_RE.findall((text or "").lower())


def _trigrams(text: Optional[str]) -> Set[str]:
    grams: Set[str] = set()
    for word in _words(text):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return grams


def trigram_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Shared trigrams over all trigrams, the way pg_trgm's similarity() counts them."""
    left, right = _trigrams(a), _trigrams(b)
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def _author_names(db: Session, item_ids: Sequence[int]) -> Dict[int, List[str]]:
    if not item_ids:
        return {}
    names: Dict[int, List[str]] = {}
    rows = (
        db.query(ItemAuthor.item_id, Author.name)
        .join(Author, Author.id == ItemAuthor.author_id)
        .filter(ItemAuthor.item_id.in_(list(item_ids)))
    )
    for item_id, name in rows:
        names.setdefault(item_id, []).append(name)
    return names


def _similar_titles_pg(db: Session, item_id: int, title: str, threshold: float, limit: int) -> List[int]:
    sim = func.similarity(CatalogItem.title, title)
    rows = (
        db.query(CatalogItem.id)
        .filter(CatalogItem.id != item_id, sim > threshold)
        .order_by(sim.desc(), CatalogItem.id)
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]


def _similar_titles_scan(db: Session, item_id: int, title: str, threshold: float, limit: int) -> List[int]:
    """
    Portable fallback: prefilter on the title's significant words, then score
    every surviving row. Nothing is capped before scoring.
    """
    words = [w for w in _words(title) if len(w) >= 3 and w not in STOP_WORDS]
    words = words or [w for w in _words(title) if len(w) >= 3] or _words(title)

    rows = (
        db.query(CatalogItem.id, CatalogItem.title)
        .filter(
            CatalogItem.id != item_id,
            or_(*[CatalogItem.title.ilike(f"%{w}%") for w in words]),
        )
        .yield_per(DUPLICATE_SCAN_BATCH)
    )
    scored = []
    for cand_id, cand_title in rows:
        sim = trigram_similarity(title, cand_title)
        if sim > threshold:
            scored.append((sim, cand_id))
    scored.sort(key=lambda pair: (-pair[0], pair[1]))
    return [cand_id for _, cand_id in scored[:limit]]


def find_potential_duplicates(
    db: Session,
    item_id: int,
    title: str,
    author: Optional[str] = None,
    *,
    title_threshold: Optional[float] = None,
    author_threshold: Optional[float] = None,
    limit: int = DUPLICATE_LIMIT,
) -> List[int]:
    """
    Items whose title is trigram-similar to `title`, best match first. When
    `author` is given, only items with a similarly named author survive.
    """
    title_threshold = settings.merge_title_similarity if title_threshold is None else title_threshold
    author_threshold = settings.merge_author_similarity if author_threshold is None else author_threshold

    if not _words(title):
        return []

    if dialect_name(db) == "postgresql":
        candidates = _similar_titles_pg(db, item_id, title, title_threshold, limit)
    else:
        candidates = _similar_titles_scan(db, item_id, title, title_threshold, limit)

    if not author or not candidates:
        return candidates

    names = _author_names(db, candidates)
    return [
        cand_id
        for cand_id in candidates
        if any(trigram_similarity(author, name) > author_threshold for name in names.get(cand_id, []))
    ]


def should_merge(db: Session, item_a: int, item_b: int) -> Tuple[bool, Optional[str]]:
    if item_a == item_b:
        return False, None
    left = aliased(CatalogEdition)
    right = aliased(CatalogEdition)
    for column in STRONG_IDENTIFIERS:
        shared = (
            db.query(left.id)
            .join(right, getattr(right, column) == getattr(left, column))
            .filter(
                left.item_id == item_a,
                right.item_id == item_b,
                getattr(left, column).isnot(None),
            )
            .first()
        )
        if shared is not None:
            return True, f"Shared identifier: {column}"
    return False, None


# ---------------------------------------------------------------------------
# merge


def _repoint(db: Session, model, from_id: int, to_id: int, match_cols: Sequence[str]) -> Tuple[int, int]:
    """
    Move `from_id` rows onto `to_id` unless `to_id` already has a row with the
    same `match_cols`; the rows that could not move are deleted.
    Returns (moved, discarded).
    """
    target = aliased(model)
    conflict = (
        select(target.item_id)
        .where(target.item_id == to_id, *[getattr(target, c) == getattr(model, c) for c in match_cols])
        .exists()
    )
    moved = (
        db.query(model)
        .filter(model.item_id == from_id, ~conflict)
        .update({model.item_id: to_id}, synchronize_session=False)
    )
    discarded = db.query(model).filter(model.item_id == from_id).delete(synchronize_session=False)
    return moved, discarded


def _later(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _collapse_event_conflicts(db: Session, from_id: int, to_id: int) -> None:
    # the surviving event keeps the most recent completion date
    source = aliased(UserEvent)
    pairs = (
        db.query(UserEvent, source.finished_at)
        .join(source, and_(source.user_id == UserEvent.user_id, source.source == UserEvent.source))
        .filter(UserEvent.item_id == to_id, source.item_id == from_id)
        .all()
    )
    for event, finished_at in pairs:
        event.finished_at = _later(event.finished_at, finished_at)
    db.flush()


def _merge_ratings(db: Session, from_id: int, to_id: int) -> None:
    existing = {r.source: r for r in db.query(RatingStat).filter(RatingStat.item_id == to_id)}
    for incoming in db.query(RatingStat).filter(RatingStat.item_id == from_id):
        current = existing.get(incoming.source)
        if current is None:
            continue
        if as_utc(incoming.last_updated) > as_utc(current.last_updated):
            current.avg = incoming.avg
            current.count = incoming.count
            current.last_updated = incoming.last_updated
    db.flush()
    _repoint(db, RatingStat, from_id, to_id, ("source",))


def _backfill(db: Session, source: CatalogItem, target: CatalogItem) -> None:
    if target.description is None:
        target.description = source.description
    if target.publish_year is None:
        target.publish_year = source.publish_year
    if target.subtitle is None:
        target.subtitle = source.subtitle
    if target.series is None:
        target.series = source.series
    if target.embedding is None and source.embedding is not None:
        target.embedding = source.embedding
    if target.work_key is None and source.work_key is not None:
        # work_key is unique; release it before handing it over
        key, source.work_key = source.work_key, None
        db.flush()
        target.work_key = key
    target.is_stub = False
    target.stub_reason = None


def _apply_merge(db: Session, source: CatalogItem, target: CatalogItem, reason: str) -> MergeInfo:
    from_id, to_id = source.id, target.id

    editions_moved = (
        db.query(CatalogEdition)
        .filter(CatalogEdition.item_id == from_id)
        .update({CatalogEdition.item_id: to_id}, synchronize_session=False)
    )

    _repoint(db, ItemAuthor, from_id, to_id, ("author_id", "role"))
    _repoint(db, ItemSubject, from_id, to_id, ("subject",))

    _collapse_event_conflicts(db, from_id, to_id)
    events_moved, events_discarded = _repoint(db, UserEvent, from_id, to_id, ("user_id", "source"))

    _merge_ratings(db, from_id, to_id)
    _repoint(db, Block, from_id, to_id, ("user_id",))

    db.query(ResolverCache).filter(ResolverCache.item_id == from_id).update(
        {ResolverCache.item_id: to_id}, synchronize_session=False
    )
    db.query(ResolverLog).filter(ResolverLog.item_id == from_id).update(
        {ResolverLog.item_id: to_id}, synchronize_session=False
    )

    # derived rows are rebuilt for the survivor on the next job run
    db.query(WorkQuality).filter(WorkQuality.item_id == from_id).delete(synchronize_session=False)
    db.query(GraphFeature).filter(GraphFeature.item_id == from_id).delete(synchronize_session=False)

    _backfill(db, source, target)

    db.add(
        MergeLog(
            item_id_from=from_id,
            item_id_to=to_id,
            reason=reason,
            editions_moved=editions_moved,
            merged_at=datetime.now(timezone.utc),
        )
    )
    db.flush()
    # bulk moves above bypass the identity map; reload before the ORM delete
    db.expire_all()
    db.delete(source)
    db.flush()

    return MergeInfo(
        item_id_from=from_id,
        item_id_to=to_id,
        reason=reason,
        editions_moved=editions_moved,
        events_moved=events_moved,
        events_discarded=events_discarded,
    )


def merge_works(db: Session, from_id: int, to_id: int, reason: str) -> MergeInfo:
    """
    Fold item `from_id` into `to_id` and delete it. Everything happens in one
    transaction: either the whole merge is committed or none of it is.
    """
    if from_id == to_id:
        raise SelfMergeError(from_id)

    started = time.monotonic()
    try:
        source = db.get(CatalogItem, from_id)
        target = db.get(CatalogItem, to_id)
        if source is None or target is None:
            missing = from_id if source is None else to_id
            raise ValidationError(f"item {missing} does not exist")
        info = _apply_merge(db, source, target, reason)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("merge_failed from=%s to=%s error=%s", from_id, to_id, exc)
        raise TransientStoreError("merge", 1, exc) from exc
    except Exception:
        db.rollback()
        raise

    log.info(
        "merge_ok from=%s to=%s reason=%r editions=%d events_moved=%d events_discarded=%d elapsed=%.2fs",
        from_id, to_id, reason, info.editions_moved, info.events_moved, info.events_discarded,
        time.monotonic() - started,
    )
    return info


def get_merge_history(db: Session, item_id: int) -> List[MergeHistoryEntry]:
    rows = (
        db.query(MergeLog)
        .filter(MergeLog.item_id_to == item_id)
        .order_by(MergeLog.merged_at.desc(), MergeLog.id.desc())
        .all()
    )
    return [
        MergeHistoryEntry(
            item_id_from=r.item_id_from,
            reason=r.reason,
            editions_moved=r.editions_moved,
            merged_at=as_utc(r.merged_at),
        )
        for r in rows
    ]


# ---------------------------------------------------------------------------
# duplicate resolution pass


def plan_merges(pairs: Iterable[Tuple[int, int, str]]) -> List[List[Tuple[int, int, str]]]:
    """
    Group confirmed duplicate pairs into independent merge chains. Every item
    in a connected group is merged into the group's lowest id; groups share
    no ids, so they can run concurrently while each group runs in order.
    """
    parent: Dict[int, int] = {}

    def find(x: int) -> int:
        while parent.setdefault(x, x) != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    reasons: Dict[int, str] = {}
    for a, b, reason in pairs:
        if a == b:
            continue
        ra, rb = find(a), find(b)
        if ra != rb:
            parent[max(ra, rb)] = min(ra, rb)
        reasons.setdefault(max(a, b), reason)

    groups: Dict[int, List[Tuple[int, int, str]]] = {}
    for item_id in sorted(parent):
        root = find(item_id)
        if item_id == root:
            continue
        groups.setdefault(root, []).append((item_id, root, reasons.get(item_id, "duplicate")))
    return [groups[root] for root in sorted(groups)]


def _confirmed_pairs(db: Session, item_ids: Sequence[int]) -> List[Tuple[int, int, str]]:
    pairs: List[Tuple[int, int, str]] = []
    seen: Set[Tuple[int, int]] = set()
    for item_id in item_ids:
        item = db.get(CatalogItem, item_id)
        if item is None:
            log.warning("dedupe_item_missing item=%s", item_id)
            continue
        names = _author_names(db, [item_id]).get(item_id) or [None]
        for cand_id in find_potential_duplicates(db, item_id, item.title, names[0]):
            key = (min(item_id, cand_id), max(item_id, cand_id))
            if key in seen:
                continue
            seen.add(key)
            ok, reason = should_merge(db, item_id, cand_id)
            if ok:
                pairs.append((key[0], key[1], reason))
    return pairs


def _run_chain(factory: sessionmaker, chain: Sequence[Tuple[int, int, str]]) -> DedupeReport:
    report = DedupeReport()
    with session_scope(factory) as db:
        for from_id, to_id, reason in chain:
            try:
                report.merged.append(merge_works(db, from_id, to_id, reason))
            except Exception as exc:
                log.exception("dedupe_merge_failed from=%s to=%s", from_id, to_id)
                report.failed.append((from_id, to_id, str(exc)))
    return report


def resolve_duplicates(
    factory: sessionmaker,
    item_ids: Sequence[int],
    concurrency: Optional[int] = None,
) -> DedupeReport:
    """Find and merge duplicates of `item_ids`, the higher id folding into the lower."""
    concurrency = settings.merge_concurrency if concurrency is None else concurrency
    started = time.monotonic()

    with session_scope(factory) as db:
        pairs = _confirmed_pairs(db, item_ids)
    chains = plan_merges(pairs)
    log.info("dedupe_planned items=%d pairs=%d chains=%d", len(item_ids), len(pairs), len(chains))

    report = DedupeReport()
    if chains:
        with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
            futures = [pool.submit(_run_chain, factory, chain) for chain in chains]
            for future in as_completed(futures):
                part = future.result()
                report.merged.extend(part.merged)
                report.failed.extend(part.failed)

    report.merged.sort(key=lambda m: (m.item_id_to, m.item_id_from))
    log.info(
        "dedupe_done merged=%d failed=%d elapsed=%.2fs",
        len(report.merged), len(report.failed), time.monotonic() - started,
    )
    return report
