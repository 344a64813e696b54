# apps/signals/quality.py
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings
from db import batch_transaction, insert_for
from models import RatingStat, WorkQuality

log = logging.getLogger("quality")

WILSON_Z = 1.96  # 95% confidence


@dataclass(frozen=True)
class SourceRating:
    source: str
    avg: float
    count: int


@dataclass(frozen=True)
class BlendedQuality:
    item_id: int
    blended_avg: float
    blended_wilson: float
    total_ratings: int


def bayesian_average(
    avg: float,
    count: float,
    prior_mean: Optional[float] = None,
    prior_weight: Optional[float] = None,
) -> float:
    prior_mean = settings.quality_prior_mean if prior_mean is None else prior_mean
    prior_weight = settings.quality_prior_weight if prior_weight is None else prior_weight
    return (prior_weight * prior_mean + count * avg) / (prior_weight + count)


def wilson_lower_bound(positive_ratio: float, total: int, z: float = WILSON_Z) -> float:
    if total <= 0:
        return 0.0
    phat = positive_ratio
    n = float(total)
    denominator = 1 + z * z / n
    center = phat + z * z / (2 * n)
    spread = z * math.sqrt((phat * (1 - phat) + z * z / (4 * n)) / n)
    return (center - spread) / denominator


def rating_to_positive_ratio(avg_rating: float) -> float:
    # 1..5 stars onto 0..1
    return max(0.0, min(1.0, (avg_rating - 1) / 4))


def blend_ratings(
    ratings: Sequence[SourceRating],
    *,
    source_weights: Optional[Mapping[str, float]] = None,
    prior_mean: Optional[float] = None,
    prior_weight: Optional[float] = None,
) -> Optional[Tuple[float, float, int]]:
    """
    Returns (blended_avg, blended_wilson, total_count), or None when there
    are no usable ratings. Raw average is weighted by count * source weight.
    """
    weights = settings.quality_source_weights if source_weights is None else source_weights

    weighted_sum = 0.0
    weighted_count = 0.0
    total = 0
    for rating in ratings:
        if rating.avg is None or not rating.count or rating.count <= 0:
            continue
        weight = float(weights.get(rating.source, 1.0))
        weighted_sum += rating.avg * rating.count * weight
        weighted_count += rating.count * weight
        total += int(rating.count)

    if total <= 0 or weighted_count <= 0:
        return None

    raw_avg = weighted_sum / weighted_count
    blended_avg = bayesian_average(raw_avg, total, prior_mean, prior_weight)
    blended_wilson = wilson_lower_bound(rating_to_positive_ratio(blended_avg), total)
    return blended_avg, blended_wilson, total


def _load_ratings(db: Session) -> Dict[int, List[SourceRating]]:
    rows = (
        db.query(RatingStat.item_id, RatingStat.source, RatingStat.avg, RatingStat.count)
        .filter(RatingStat.avg.isnot(None), RatingStat.count > 0)
        .order_by(RatingStat.item_id)
        .all()
    )
    grouped: Dict[int, List[SourceRating]] = {}
    for item_id, source, avg, count in rows:
        grouped.setdefault(item_id, []).append(
            SourceRating(source=source, avg=float(avg), count=int(count))
        )
    return grouped


def _store_batch(db: Session, batch: Sequence[BlendedQuality], batch_no: int) -> None:
    with batch_transaction(db, "quality", batch_no):
        stmt = insert_for(db, WorkQuality).values(
            [
                {
                    "item_id": q.item_id,
                    "blended_avg": q.blended_avg,
                    "blended_wilson": q.blended_wilson,
                    "total_ratings": q.total_ratings,
                }
                for q in batch
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[WorkQuality.item_id],
            set_={
                "blended_avg": stmt.excluded.blended_avg,
                "blended_wilson": stmt.excluded.blended_wilson,
                "total_ratings": stmt.excluded.total_ratings,
                "updated_at": func.now(),
            },
        )
        db.execute(stmt)


def compute_work_quality(db: Session, batch_size: Optional[int] = None) -> int:
    """Blend every item's rating sources into WorkQuality. Returns rows written."""
    batch_size = max(1, batch_size or settings.quality_batch_size)
    started = time.monotonic()

    grouped = _load_ratings(db)
    log.info("quality_start items=%d", len(grouped))

    processed = 0
    batch_no = 0
    batch: List[BlendedQuality] = []
    for item_id, ratings in grouped.items():
        blended = blend_ratings(ratings)
        if blended is None:
            continue
        blended_avg, blended_wilson, total = blended
        batch.append(BlendedQuality(item_id, blended_avg, blended_wilson, total))
        if len(batch) >= batch_size:
            batch_no += 1
            _store_batch(db, batch, batch_no)
            processed += len(batch)
            log.info("quality_batch_ok batch=%d rows=%d processed=%d", batch_no, len(batch), processed)
            batch = []

    if batch:
        batch_no += 1
        _store_batch(db, batch, batch_no)
        processed += len(batch)
        log.info("quality_batch_ok batch=%d rows=%d processed=%d", batch_no, len(batch), processed)

    log.info("quality_done processed=%d elapsed=%.2fs", processed, time.monotonic() - started)
    return processed


def _to_blended(row: WorkQuality) -> BlendedQuality:
    return BlendedQuality(
        item_id=row.item_id,
        blended_avg=float(row.blended_avg),
        blended_wilson=float(row.blended_wilson),
        total_ratings=int(row.total_ratings),
    )


def get_work_quality(db: Session, item_id: int) -> Optional[BlendedQuality]:
    row = db.get(WorkQuality, item_id)
    return _to_blended(row) if row else None


def get_work_qualities(db: Session, item_ids: Iterable[int]) -> Dict[int, BlendedQuality]:
    ids = list(set(item_ids))
    if not ids:
        return {}
    rows = db.query(WorkQuality).filter(WorkQuality.item_id.in_(ids)).all()
    return {row.item_id: _to_blended(row) for row in rows}
