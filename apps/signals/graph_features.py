# apps/signals/graph_features.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import settings
from db import batch_transaction, insert_for
from models import Block, CatalogItem, GraphFeature, ItemAuthor, ItemSubject, UserEvent

log = logging.getLogger("graph")


@dataclass(frozen=True)
class ItemGraphFeatures:
    item_id: int
    author_affinity: float
    subject_overlap: float
    same_series: bool
    community_id: Optional[int]
    prox_score: float


@dataclass
class UserAffinitySeeds:
    favorite_item_ids: Set[int]
    favorite_author_ids: Set[int]
    favorite_subjects: Set[str]
    series: Set[str]
    blocked_item_ids: Set[int]
    read_count: int = 0


def is_favorite(rating: Optional[float]) -> bool:
    # no rating on a read item counts as an endorsement
    return rating is None or rating >= 4


def author_affinity(candidate_authors: Sequence[int], favorite_authors: Set[int]) -> float:
    if not candidate_authors:
        return 0.0
    hits = sum(1 for author_id in candidate_authors if author_id in favorite_authors)
    return hits / len(candidate_authors)


def subject_overlap(candidate_subjects: Iterable[str], favorite_subjects: Set[str]) -> float:
    cand = set(candidate_subjects)
    union = cand | favorite_subjects
    if not union:
        return 0.0
    return len(cand & favorite_subjects) / len(union)


def _group(rows) -> Dict:
    grouped: Dict = {}
    for key, value in rows:
        grouped.setdefault(key, []).append(value)
    return grouped


def load_user_seeds(db: Session, user_id: str) -> UserAffinitySeeds:
    blocks = db.query(Block.item_id, Block.author_id).filter(Block.user_id == user_id).all()
    blocked_items = {item_id for item_id, _ in blocks if item_id is not None}
    blocked_authors = {author_id for _, author_id in blocks if author_id is not None}

    read_rows = (
        db.query(UserEvent.item_id, UserEvent.rating, CatalogItem.series)
        .join(CatalogItem, CatalogItem.id == UserEvent.item_id)
        .filter(UserEvent.user_id == user_id, UserEvent.shelf == "read")
        .all()
    )
    favorites = {
        item_id
        for item_id, rating, _series in read_rows
        if is_favorite(rating) and item_id not in blocked_items
    }
    series = {s for _item_id, _rating, s in read_rows if s}

    favorite_authors: Set[int] = set()
    favorite_subjects: Set[str] = set()
    if favorites:
        favorite_authors = {
            author_id
            for (author_id,) in db.query(ItemAuthor.author_id)
            .filter(ItemAuthor.item_id.in_(favorites))
            .distinct()
        } - blocked_authors
        favorite_subjects = {
            subject
            for (subject,) in db.query(ItemSubject.subject)
            .filter(ItemSubject.item_id.in_(favorites))
            .distinct()
        }

    return UserAffinitySeeds(
        favorite_item_ids=favorites,
        favorite_author_ids=favorite_authors,
        favorite_subjects=favorite_subjects,
        series=series,
        blocked_item_ids=blocked_items,
        read_count=len(read_rows),
    )


def _store_features(db: Session, batch: Sequence[ItemGraphFeatures], batch_no: int) -> None:
    with batch_transaction(db, "graph_features", batch_no):
        stmt = insert_for(db, GraphFeature).values(
            [
                {
                    "item_id": f.item_id,
                    "author_affinity": f.author_affinity,
                    "subject_overlap": f.subject_overlap,
                    "same_series": f.same_series,
                    "community_id": f.community_id,
                    "prox_score": f.prox_score,
                }
                for f in batch
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[GraphFeature.item_id],
            set_={
                "author_affinity": stmt.excluded.author_affinity,
                "subject_overlap": stmt.excluded.subject_overlap,
                "same_series": stmt.excluded.same_series,
                "community_id": stmt.excluded.community_id,
                "prox_score": stmt.excluded.prox_score,
                "updated_at": func.now(),
            },
        )
        db.execute(stmt)


def compute_graph_features(
    db: Session,
    user_id: str,
    *,
    candidate_limit: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> int:
    """
    Score every item the user has not interacted with against the user's
    favorites. Author and subject links for all candidates are fetched in two
    bulk queries. Returns the number of feature rows written.
    """
    candidate_limit = candidate_limit or settings.graph_candidate_limit
    batch_size = max(1, batch_size or settings.graph_feature_batch_size)
    started = time.monotonic()

    seeds = load_user_seeds(db, user_id)
    if not seeds.read_count:
        log.warning("graph_features_no_read_items user=%s", user_id)
        return 0

    interacted = select(UserEvent.item_id).where(UserEvent.user_id == user_id)
    query = db.query(CatalogItem.id, CatalogItem.series, CatalogItem.community_id).filter(
        ~CatalogItem.id.in_(interacted)
    )
    if seeds.blocked_item_ids:
        query = query.filter(~CatalogItem.id.in_(seeds.blocked_item_ids))
    candidates = query.order_by(CatalogItem.id).limit(candidate_limit).all()

    if not candidates:
        log.warning("graph_features_no_candidates user=%s", user_id)
        return 0

    candidate_ids = [row[0] for row in candidates]
    authors_by_item: Dict[int, List[int]] = _group(
        db.query(ItemAuthor.item_id, ItemAuthor.author_id)
        .filter(ItemAuthor.item_id.in_(candidate_ids))
        .distinct()
    )
    subjects_by_item: Dict[int, List[str]] = _group(
        db.query(ItemSubject.item_id, ItemSubject.subject).filter(ItemSubject.item_id.in_(candidate_ids))
    )

    processed = 0
    batch_no = 0
    batch: List[ItemGraphFeatures] = []
    for item_id, series, community_id in candidates:
        aff = author_affinity(authors_by_item.get(item_id, []), seeds.favorite_author_ids)
        overlap = subject_overlap(subjects_by_item.get(item_id, []), seeds.favorite_subjects)
        batch.append(
            ItemGraphFeatures(
                item_id=item_id,
                author_affinity=aff,
                subject_overlap=overlap,
                same_series=bool(series) and series in seeds.series,
                community_id=community_id,
                prox_score=(aff + overlap) / 2,
            )
        )
        if len(batch) >= batch_size:
            batch_no += 1
            _store_features(db, batch, batch_no)
            processed += len(batch)
            log.info("graph_features_batch_ok user=%s batch=%d processed=%d", user_id, batch_no, processed)
            batch = []

    if batch:
        batch_no += 1
        _store_features(db, batch, batch_no)
        processed += len(batch)
        log.info("graph_features_batch_ok user=%s batch=%d processed=%d", user_id, batch_no, processed)

    log.info(
        "graph_features_done user=%s processed=%d elapsed=%.2fs",
        user_id, processed, time.monotonic() - started,
    )
    return processed


def get_graph_features(db: Session, item_ids: Iterable[int]) -> Dict[int, ItemGraphFeatures]:
    ids = list(set(item_ids))
    if not ids:
        return {}
    rows = db.query(GraphFeature).filter(GraphFeature.item_id.in_(ids)).all()
    return {
        row.item_id: ItemGraphFeatures(
            item_id=row.item_id,
            author_affinity=float(row.author_affinity),
            subject_overlap=float(row.subject_overlap),
            same_series=bool(row.same_series),
            community_id=row.community_id,
            prox_score=float(row.prox_score),
        )
        for row in rows
    }
