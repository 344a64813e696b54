"""Tests for co-occurrence building and similar-item lookups."""
import pytest

from cooccurrence import (
    PairStat,
    author_pairs,
    build_cooccurrence,
    get_also_read,
    get_similar,
    get_similar_batch,
    list_pairs,
    merge_pair_stats,
    prune_top_k,
    symmetric_rows,
)
from factories import add_author, add_item, link_author
from models import Cooccurrence, CuratedList, CuratedListEntry, ReadingLog

LISTS = {
    "l1": ["a", "b", "c"],
    "l2": ["a", "b"],
    "l3": ["a", "c"],
}


def _memberships():
    return [(idx, key) for idx, keys in enumerate(LISTS.values()) for key in keys]


def test_list_pairs_counts_shared_lists():
    pairs = list_pairs(_memberships(), min_lists=2, min_overlap=2)
    assert set(pairs) == {("a", "b"), ("a", "c")}
    ab = pairs[("a", "b")]
    assert (ab.overlap, ab.readers_a, ab.readers_b) == (2, 3, 2)
    assert ab.jaccard == pytest.approx(2 / 3)


def test_author_pairs_scale_and_cap():
    authorships = [(7, "w1"), (7, "w2"), (8, "w1"), (8, "w2"), (9, "w3")]
    counts = {7: 2, 8: 2, 9: 1}
    pairs = author_pairs(authorships, counts, min_works=2, max_works=100, jaccard_scale=0.1)
    assert set(pairs) == {("w1", "w2")}
    assert pairs[("w1", "w2")].overlap == 2
    assert pairs[("w1", "w2")].jaccard == pytest.approx(0.1)

    capped = author_pairs(authorships, counts, min_works=2, max_works=100, jaccard_scale=5.0)
    assert capped[("w1", "w2")].jaccard == 1.0


def test_merge_keeps_the_larger_score():
    merged = merge_pair_stats(
        {("a", "b"): PairStat(2, 0.2, 5, 5)},
        {("a", "b"): PairStat(1, 0.9, 1, 1), ("a", "c"): PairStat(1, 0.4, 1, 1)},
    )
    assert merged[("a", "b")].jaccard == 0.9
    assert merged[("a", "b")].overlap == 2
    assert merged[("a", "c")].jaccard == 0.4


def test_prune_top_k_limits_neighbors_per_source():
    rows = symmetric_rows(
        {
            ("a", "b"): PairStat(2, 0.9, 1, 1),
            ("a", "c"): PairStat(2, 0.5, 1, 1),
            ("a", "d"): PairStat(2, 0.1, 1, 1),
        }
    )
    kept, pruned = prune_top_k(rows, top_k=2)
    assert {p for p in kept if p[0] == "a"} == {("a", "b"), ("a", "c")}
    assert pruned == 1
    assert ("d", "a") in kept


def _seed_lists(db):
    for idx, (list_key, keys) in enumerate(LISTS.items(), start=1):
        db.add(CuratedList(id=idx, list_key=list_key, owner_key="owner", name=list_key))
        db.flush()
        for key in keys:
            db.add(CuratedListEntry(list_id=idx, item_key=key))
    db.flush()


def test_build_stores_both_directions_with_matching_scores(db):
    _seed_lists(db)
    db.commit()

    stats = build_cooccurrence(db, min_overlap=2, min_lists=2, top_k=10, batch_size=1)
    assert stats.list_pairs == 2
    assert stats.rows_written == 4

    rows = {(r.item_key_a, r.item_key_b): r for r in db.query(Cooccurrence)}
    for (a, b), row in rows.items():
        assert rows[(b, a)].jaccard == row.jaccard

    for a, b in rows:
        assert b in [s.item_key for s in get_similar(db, a)]
        assert a in [s.item_key for s in get_similar(db, b)]


def test_rebuild_replaces_old_rows(db):
    db.add(Cooccurrence(item_key_a="x", item_key_b="y", overlap=9, jaccard=1.0))
    _seed_lists(db)
    db.commit()

    build_cooccurrence(db, min_overlap=2, min_lists=2, top_k=10)
    assert db.get(Cooccurrence, ("x", "y")) is None


def test_author_pass_feeds_the_second_tier(db):
    author = add_author(db, "Prolific")
    for key in ("w1", "w2"):
        link_author(db, add_item(db, key, work_key=key), author)
    db.commit()

    stats = build_cooccurrence(db, min_overlap=2, min_lists=2, top_k=10)
    assert stats.author_pairs == 1

    similar = get_similar(db, "w1")
    assert [s.item_key for s in similar] == ["w2"]
    assert similar[0].overlap == 1

    batch = get_similar_batch(db, ["w1", "w2", "nothing"])
    assert [s.item_key for s in batch["w2"]] == ["w1"]
    assert batch["nothing"] == []


def _log_reads(db, reader, *keys):
    for key in keys:
        db.add(ReadingLog(item_key=key, reader_key=reader, status="already-read"))


def test_also_read_fallback_uses_reading_logs(db):
    for reader in ("r1", "r2", "r3"):
        _log_reads(db, reader, "x", "y")
    _log_reads(db, "r4", "y")
    _log_reads(db, "r5", "x", "z")
    db.add(ReadingLog(item_key="y", reader_key="r6", status="want-to-read"))
    db.commit()

    also = get_also_read(db, "x", min_overlap=3)
    assert [s.item_key for s in also] == ["y"]
    # 3 shared readers, 4 readers of x, 4 readers of y
    assert also[0].jaccard == pytest.approx(3 / 5)

    # nothing precomputed, so the tiered lookup lands on the same answer
    assert [s.item_key for s in get_similar(db, "x")] == ["y"]
    assert get_also_read(db, "unknown") == []
