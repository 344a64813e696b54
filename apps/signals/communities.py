# apps/signals/communities.py
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from config import settings
from db import batch_transaction
from models import CatalogItem, Cooccurrence

log = logging.getLogger("communities")


@dataclass
class CommunityStats:
    nodes: int = 0
    edges: int = 0
    iterations: int = 0
    communities: int = 0
    assigned_items: int = 0


def label_propagation(
    edges: Iterable[Tuple[str, str, float]],
    *,
    iterations: int,
    min_size: int,
    seed: Optional[int] = None,
) -> Tuple[Dict[str, int], int]:
    """
    Weighted label propagation. Returns (labels, iterations_run); nodes in a
    community smaller than `min_size` are absent from labels. Community ids
    are dense, numbered from 0 in order of first appearance.
    """
    neighbors: Dict[str, List[Tuple[str, float]]] = {}
    for a, b, weight in edges:
        neighbors.setdefault(a, []).append((b, weight))
        neighbors.setdefault(b, []).append((a, weight))

    nodes = sorted(neighbors)
    labels = {node: idx for idx, node in enumerate(nodes)}
    rng = random.Random(seed)

    ran = 0
    for _ in range(iterations):
        ran += 1
        order = list(nodes)
        rng.shuffle(order)
        changes = 0
        for node in order:
            votes: Dict[int, float] = {}
            for other, weight in neighbors[node]:
                label = labels[other]
                votes[label] = votes.get(label, 0.0) + weight

            best_label = labels[node]
            best_votes = 0.0
            for label, count in votes.items():
                if count > best_votes:
                    best_votes = count
                    best_label = label
            if best_label != labels[node]:
                labels[node] = best_label
                changes += 1

        log.debug("communities_iteration iter=%d changes=%d", ran, changes)
        if changes == 0:
            break

    sizes: Dict[int, int] = {}
    for label in labels.values():
        sizes[label] = sizes.get(label, 0) + 1

    remap: Dict[int, int] = {}
    result: Dict[str, int] = {}
    for node in nodes:
        label = labels[node]
        if sizes[label] < min_size:
            continue
        if label not in remap:
            remap[label] = len(remap)
        result[node] = remap[label]
    return result, ran


def build_communities(
    db: Session,
    *,
    iterations: Optional[int] = None,
    min_jaccard: Optional[float] = None,
    min_size: Optional[int] = None,
    seed: Optional[int] = None,
    batch_size: int = 5000,
) -> CommunityStats:
    """Group items by co-occurrence and store the result on CatalogItem.community_id."""
    iterations = settings.community_iterations if iterations is None else iterations
    min_jaccard = settings.community_min_jaccard if min_jaccard is None else min_jaccard
    min_size = settings.community_min_size if min_size is None else min_size
    started = time.monotonic()

    edges = [
        (a, b, float(j))
        for a, b, j in db.query(
            Cooccurrence.item_key_a, Cooccurrence.item_key_b, Cooccurrence.jaccard
        ).filter(Cooccurrence.jaccard >= min_jaccard)
    ]
    labels, ran = label_propagation(edges, iterations=iterations, min_size=min_size, seed=seed)

    stats = CommunityStats(
        nodes=len({k for a, b, _ in edges for k in (a, b)}),
        edges=len(edges),
        iterations=ran,
        communities=len(set(labels.values())),
    )
    log.info(
        "communities_computed nodes=%d edges=%d iterations=%d communities=%d",
        stats.nodes, stats.edges, stats.iterations, stats.communities,
    )

    with batch_transaction(db, "communities_clear", 0):
        db.query(CatalogItem).filter(CatalogItem.community_id.isnot(None)).update(
            {CatalogItem.community_id: None}, synchronize_session=False
        )

    by_community: Dict[int, List[str]] = {}
    for key, community_id in labels.items():
        by_community.setdefault(community_id, []).append(key)

    batch_no = 0
    for community_id, keys in sorted(by_community.items()):
        for start in range(0, len(keys), batch_size):
            batch_no += 1
            chunk = keys[start:start + batch_size]
            with batch_transaction(db, "communities", batch_no):
                updated = (
                    db.query(CatalogItem)
                    .filter(CatalogItem.work_key.in_(chunk))
                    .update({CatalogItem.community_id: community_id}, synchronize_session=False)
                )
            stats.assigned_items += updated

    log.info(
        "communities_done communities=%d assigned=%d elapsed=%.2fs",
        stats.communities, stats.assigned_items, time.monotonic() - started,
    )
    return stats
