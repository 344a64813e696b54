# apps/signals/cooccurrence.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import distinct, func, or_, select
from sqlalchemy.orm import Session

from config import settings
from db import batch_transaction, greatest, insert_for
from models import CatalogItem, Cooccurrence, CuratedListEntry, ItemAuthor, ReadingLog

log = logging.getLogger("cooccurrence")

ALREADY_READ = "already-read"
LIST_TIER_MIN_OVERLAP = 2
AUTHOR_TIER_MIN_OVERLAP = 1

Pair = Tuple[str, str]


@dataclass
class PairStat:
    overlap: int
    jaccard: float
    readers_a: int
    readers_b: int


@dataclass(frozen=True)
class SimilarItem:
    item_key: str
    overlap: int
    jaccard: float
    readers_a: int
    readers_b: int


@dataclass
class CooccurrenceStats:
    list_pairs: int = 0
    author_pairs: int = 0
    rows_written: int = 0
    pruned: int = 0


def list_pairs(
    memberships: Iterable[Tuple[int, str]],
    *,
    min_lists: int,
    min_overlap: int,
) -> Dict[Pair, PairStat]:
    """
    Pairs of items appearing together in curated lists. Only items found in
    at least `min_lists` lists take part. Keys are ordered (a < b).
    """
    lists_by_item: Dict[str, Set[int]] = {}
    for list_id, item_key in memberships:
        lists_by_item.setdefault(item_key, set()).add(list_id)

    list_counts = {k: len(v) for k, v in lists_by_item.items() if len(v) >= min_lists}

    members: Dict[int, Set[str]] = {}
    for item_key in list_counts:
        for list_id in lists_by_item[item_key]:
            members.setdefault(list_id, set()).add(item_key)

    overlaps: Dict[Pair, int] = {}
    for keys in members.values():
        for a, b in combinations(sorted(keys), 2):
            overlaps[(a, b)] = overlaps.get((a, b), 0) + 1

    out: Dict[Pair, PairStat] = {}
    for (a, b), overlap in overlaps.items():
        if overlap < min_overlap:
            continue
        ca, cb = list_counts[a], list_counts[b]
        out[(a, b)] = PairStat(overlap, overlap / (ca + cb - overlap), ca, cb)
    return out


def author_pairs(
    authorships: Iterable[Tuple[int, str]],
    author_work_counts: Dict[int, int],
    *,
    min_works: int,
    max_works: int,
    jaccard_scale: float,
) -> Dict[Pair, PairStat]:
    """
    Pairs of items sharing an author. Authors outside [min_works, max_works]
    are ignored. The shared-author ratio is scaled up and capped at 1.0.
    """
    eligible = {a for a, n in author_work_counts.items() if min_works <= n <= max_works}

    works_by_author: Dict[int, Set[str]] = {}
    authors_by_work: Dict[str, Set[int]] = {}
    for author_id, item_key in authorships:
        if author_id not in eligible:
            continue
        works_by_author.setdefault(author_id, set()).add(item_key)
        authors_by_work.setdefault(item_key, set()).add(author_id)

    shared: Dict[Pair, int] = {}
    for keys in works_by_author.values():
        for a, b in combinations(sorted(keys), 2):
            shared[(a, b)] = shared.get((a, b), 0) + 1

    out: Dict[Pair, PairStat] = {}
    for (a, b), count in shared.items():
        ca, cb = len(authors_by_work[a]), len(authors_by_work[b])
        jaccard = min(1.0, count / max(ca, cb) * jaccard_scale)
        out[(a, b)] = PairStat(count, jaccard, ca, cb)
    return out


def merge_pair_stats(primary: Dict[Pair, PairStat], secondary: Dict[Pair, PairStat]) -> Dict[Pair, PairStat]:
    """Union of two passes; a pair in both keeps the larger jaccard and overlap."""
    merged = {pair: PairStat(s.overlap, s.jaccard, s.readers_a, s.readers_b) for pair, s in primary.items()}
    for pair, stat in secondary.items():
        existing = merged.get(pair)
        if existing is None:
            merged[pair] = PairStat(stat.overlap, stat.jaccard, stat.readers_a, stat.readers_b)
            continue
        existing.jaccard = max(existing.jaccard, stat.jaccard)
        existing.overlap = max(existing.overlap, stat.overlap)
    return merged


def symmetric_rows(pairs: Dict[Pair, PairStat]) -> Dict[Pair, PairStat]:
    rows: Dict[Pair, PairStat] = {}
    for (a, b), s in pairs.items():
        rows[(a, b)] = s
        rows.setdefault((b, a), PairStat(s.overlap, s.jaccard, s.readers_b, s.readers_a))
    return rows


def prune_top_k(rows: Dict[Pair, PairStat], top_k: int) -> Tuple[Dict[Pair, PairStat], int]:
    by_source: Dict[str, List[Tuple[Pair, PairStat]]] = {}
    for pair, stat in rows.items():
        by_source.setdefault(pair[0], []).append((pair, stat))

    kept: Dict[Pair, PairStat] = {}
    pruned = 0
    for entries in by_source.values():
        entries.sort(key=lambda e: (-e[1].jaccard, -e[1].overlap, e[0][1]))
        for pair, stat in entries[:top_k]:
            kept[pair] = stat
        pruned += max(0, len(entries) - top_k)
    return kept, pruned


def _load_list_memberships(db: Session) -> List[Tuple[int, str]]:
    return [
        (list_id, item_key)
        for list_id, item_key in db.query(CuratedListEntry.list_id, CuratedListEntry.item_key).distinct()
    ]


def _load_authorships(db: Session) -> Tuple[List[Tuple[int, str]], Dict[int, int]]:
    counts = {
        author_id: int(n)
        for author_id, n in db.query(ItemAuthor.author_id, func.count())
        .group_by(ItemAuthor.author_id)
    }
    rows = (
        db.query(ItemAuthor.author_id, CatalogItem.work_key)
        .join(CatalogItem, CatalogItem.id == ItemAuthor.item_id)
        .filter(CatalogItem.work_key.isnot(None))
        .distinct()
        .all()
    )
    return [(author_id, work_key) for author_id, work_key in rows], counts


def _write_rows(db: Session, rows: Sequence[Tuple[Pair, PairStat]], batch_no: int) -> None:
    with batch_transaction(db, "cooccurrence", batch_no):
        stmt = insert_for(db, Cooccurrence).values(
            [
                {
                    "item_key_a": a,
                    "item_key_b": b,
                    "overlap": s.overlap,
                    "jaccard": s.jaccard,
                    "readers_a": s.readers_a,
                    "readers_b": s.readers_b,
                }
                for (a, b), s in rows
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Cooccurrence.item_key_a, Cooccurrence.item_key_b],
            set_={
                "jaccard": greatest(db, Cooccurrence.jaccard, stmt.excluded.jaccard),
                "overlap": greatest(db, Cooccurrence.overlap, stmt.excluded.overlap),
                "updated_at": func.now(),
            },
        )
        db.execute(stmt)


def build_cooccurrence(
    db: Session,
    *,
    min_overlap: Optional[int] = None,
    min_lists: Optional[int] = None,
    top_k: Optional[int] = None,
    batch_size: int = 1000,
) -> CooccurrenceStats:
    """
    Rebuild the co-occurrence table from curated lists, then shared authors.
    Both directions of every pair are stored with identical scores, and each
    item keeps at most `top_k` neighbors.
    """
    min_overlap = settings.cooccur_min_overlap if min_overlap is None else min_overlap
    min_lists = settings.cooccur_min_lists if min_lists is None else min_lists
    top_k = settings.cooccur_top_k if top_k is None else top_k
    started = time.monotonic()
    stats = CooccurrenceStats()

    log.info("cooccur_start min_overlap=%d min_lists=%d top_k=%d", min_overlap, min_lists, top_k)

    from_lists = list_pairs(_load_list_memberships(db), min_lists=min_lists, min_overlap=min_overlap)
    stats.list_pairs = len(from_lists)
    log.info("cooccur_list_pass_ok pairs=%d", stats.list_pairs)

    authorships, author_counts = _load_authorships(db)
    from_authors = author_pairs(
        authorships,
        author_counts,
        min_works=settings.cooccur_author_min_works,
        max_works=settings.cooccur_author_max_works,
        jaccard_scale=settings.cooccur_author_jaccard_scale,
    )
    stats.author_pairs = len(from_authors)
    log.info("cooccur_author_pass_ok pairs=%d", stats.author_pairs)

    rows = symmetric_rows(merge_pair_stats(from_lists, from_authors))
    rows, stats.pruned = prune_top_k(rows, top_k)

    with batch_transaction(db, "cooccurrence_clear", 0):
        db.query(Cooccurrence).delete(synchronize_session=False)

    ordered = sorted(rows.items())
    for batch_no, start in enumerate(range(0, len(ordered), batch_size), start=1):
        chunk = ordered[start:start + batch_size]
        _write_rows(db, chunk, batch_no)
        stats.rows_written += len(chunk)
        log.info("cooccur_batch_ok batch=%d rows=%d", batch_no, len(chunk))

    log.info(
        "cooccur_done list_pairs=%d author_pairs=%d rows=%d pruned=%d elapsed=%.2fs",
        stats.list_pairs, stats.author_pairs, stats.rows_written, stats.pruned,
        time.monotonic() - started,
    )
    return stats


def _neighbors(db: Session, keys: Sequence[str], min_overlap: int) -> Dict[str, Dict[str, SimilarItem]]:
    """Neighbors of each key read from both directions of the table."""
    out: Dict[str, Dict[str, SimilarItem]] = {k: {} for k in keys}
    if not keys:
        return out
    rows = (
        db.query(Cooccurrence)
        .filter(
            or_(Cooccurrence.item_key_a.in_(keys), Cooccurrence.item_key_b.in_(keys)),
            Cooccurrence.overlap >= min_overlap,
        )
        .all()
    )
    for row in rows:
        candidates = []
        if row.item_key_a in out:
            candidates.append(
                (row.item_key_a, SimilarItem(row.item_key_b, row.overlap, row.jaccard, row.readers_a, row.readers_b))
            )
        if row.item_key_b in out:
            candidates.append(
                (row.item_key_b, SimilarItem(row.item_key_a, row.overlap, row.jaccard, row.readers_b, row.readers_a))
            )
        for source, item in candidates:
            if item.item_key == source:
                continue
            current = out[source].get(item.item_key)
            if current is None or item.jaccard > current.jaccard:
                out[source][item.item_key] = item
    return out


def _ranked(items: Iterable[SimilarItem]) -> List[SimilarItem]:
    return sorted(items, key=lambda s: (-s.jaccard, -s.overlap, s.item_key))


def get_similar_precomputed(
    db: Session, item_key: str, limit: int = 50, min_overlap: int = LIST_TIER_MIN_OVERLAP
) -> List[SimilarItem]:
    return _ranked(_neighbors(db, [item_key], min_overlap)[item_key].values())[:limit]


def get_similar(db: Session, item_key: str, limit: int = 50) -> List[SimilarItem]:
    """
    Tiered lookup: list-based neighbors, then author-based, then a live
    co-read computation over reading logs.
    """
    list_based = get_similar_precomputed(db, item_key, limit, LIST_TIER_MIN_OVERLAP)
    if list_based:
        return list_based

    author_based = get_similar_precomputed(db, item_key, limit, AUTHOR_TIER_MIN_OVERLAP)
    if author_based:
        return author_based

    return get_also_read(db, item_key, limit)


def get_similar_batch(
    db: Session, item_keys: Iterable[str], limit_per_item: int = 20
) -> Dict[str, List[SimilarItem]]:
    """Per key, list-based neighbors rank ahead of author-based ones."""
    keys = list(dict.fromkeys(item_keys))
    neighbors = _neighbors(db, keys, AUTHOR_TIER_MIN_OVERLAP)
    result: Dict[str, List[SimilarItem]] = {}
    for key in keys:
        ranked = sorted(
            neighbors[key].values(),
            key=lambda s: (0 if s.overlap >= LIST_TIER_MIN_OVERLAP else 1, -s.jaccard, s.item_key),
        )
        result[key] = ranked[:limit_per_item]
    return result


def get_also_read(
    db: Session, item_key: str, limit: int = 50, min_overlap: Optional[int] = None
) -> List[SimilarItem]:
    """Live co-read similarity: readers who finished this item and another."""
    min_overlap = settings.coread_min_overlap if min_overlap is None else min_overlap

    seed_readers = (
        db.query(ReadingLog.reader_key)
        .filter(ReadingLog.item_key == item_key, ReadingLog.status == ALREADY_READ)
        .distinct()
        .subquery()
    )
    seed_count = db.query(func.count()).select_from(seed_readers).scalar() or 0
    if seed_count == 0:
        return []

    overlap_col = func.count(distinct(ReadingLog.reader_key))
    coread = (
        db.query(ReadingLog.item_key, overlap_col)
        .filter(
            ReadingLog.reader_key.in_(select(seed_readers.c.reader_key)),
            ReadingLog.item_key != item_key,
            ReadingLog.status == ALREADY_READ,
        )
        .group_by(ReadingLog.item_key)
        .having(overlap_col >= min_overlap)
        .all()
    )
    if not coread:
        return []

    other_keys = [key for key, _ in coread]
    reader_counts = dict(
        db.query(ReadingLog.item_key, func.count(distinct(ReadingLog.reader_key)))
        .filter(ReadingLog.item_key.in_(other_keys), ReadingLog.status == ALREADY_READ)
        .group_by(ReadingLog.item_key)
        .all()
    )

    results = []
    for key, overlap in coread:
        readers_b = int(reader_counts.get(key, 0))
        denom = seed_count + readers_b - overlap
        jaccard = overlap / denom if denom > 0 else 0.0
        results.append(SimilarItem(key, int(overlap), jaccard, int(seed_count), readers_b))
    return _ranked(results)[:limit]
