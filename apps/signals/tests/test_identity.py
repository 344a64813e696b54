"""Tests for duplicate detection and transactional merges."""
from datetime import date, timedelta

import pytest

import identity
from errors import SelfMergeError, ValidationError
from factories import NOW, add_author, add_edition, add_event, add_item, add_rating, add_subject, link_author
from identity import (
    find_potential_duplicates,
    get_merge_history,
    merge_works,
    plan_merges,
    resolve_duplicates,
    should_merge,
    trigram_similarity,
)
from models import (
    Base,
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


def test_trigram_similarity_matches_pg_trgm():
    assert trigram_similarity("word", "words") == pytest.approx(4 / 7)
    assert trigram_similarity("Dune", "dune") == 1.0
    assert trigram_similarity("abc", "xyz") == 0.0
    assert trigram_similarity("", "") == 0.0


def test_shared_isbn13_is_a_merge_reason(db):
    a = add_item(db, "A")
    b = add_item(db, "B")
    add_edition(db, a, isbn13="9780000000001", asin="B0A")
    add_edition(db, b, isbn13="9780000000001", asin="B0B")

    ok, reason = should_merge(db, a.id, b.id)
    assert ok
    assert "isbn13" in reason


def test_identifier_priority_and_no_match(db):
    a = add_item(db, "A")
    b = add_item(db, "B")
    c = add_item(db, "C")
    add_edition(db, a, isbn10="0000000001", asin="B0SHARED")
    add_edition(db, b, isbn10="0000000001", asin="B0SHARED")
    add_edition(db, c, asin="B0OTHER")

    assert should_merge(db, a.id, b.id) == (True, "Shared identifier: isbn10")
    assert should_merge(db, a.id, c.id) == (False, None)
    assert should_merge(db, a.id, a.id) == (False, None)


def test_find_potential_duplicates_by_title_then_author(db):
    original = add_item(db, "The Name of the Wind")
    dup = add_item(db, "Name of the Wind")
    add_item(db, "The Wise Man's Fear")
    add_item(db, "Wind and Sand")
    link_author(db, dup, add_author(db, "Patrick Rothfuss"))

    assert find_potential_duplicates(db, original.id, original.title) == [dup.id]
    assert find_potential_duplicates(db, original.id, original.title, "Patrick Rothfuss") == [dup.id]
    assert find_potential_duplicates(db, original.id, original.title, "Someone Else") == []
    assert find_potential_duplicates(db, original.id, "") == []


def test_find_potential_duplicates_sees_past_common_word_titles(db):
    """Thousands of earlier titles sharing only "the" must not crowd out a real match."""
    db.add_all([CatalogItem(title=f"The Story Number {n}") for n in range(2100)])
    db.flush()
    original = add_item(db, "The Hobbit")
    dup = add_item(db, "The Hobbit")

    assert find_potential_duplicates(db, original.id, "The Hobbit") == [dup.id]


def test_self_merge_fails_before_touching_anything(db):
    item = add_item(db, "Only")
    add_edition(db, item, isbn13="9780000000002")
    db.commit()

    with pytest.raises(SelfMergeError):
        merge_works(db, item.id, item.id, "oops")

    assert db.get(CatalogItem, item.id) is not None
    assert db.query(MergeLog).count() == 0


def test_merge_into_missing_item_is_rejected(db):
    item = add_item(db, "Only")
    db.commit()
    with pytest.raises(ValidationError):
        merge_works(db, item.id, item.id + 100, "oops")
    assert db.get(CatalogItem, item.id) is not None


@pytest.fixture
def duplicate_pair(db):
    """`source` is a stub created from an ASIN; `target` is the canonical item."""
    source = add_item(db, "Dune", description="Spice.", publish_year=1965, work_key="OL1W")
    target = add_item(db, "Dune", is_stub=True, stub_reason="asin only")
    add_edition(db, source, isbn13="9780441013593")
    add_edition(db, source, asin="B0DUNE")
    add_edition(db, target, isbn13="9780441013593")

    shared, only_source = add_author(db, "Frank Herbert"), add_author(db, "Translator")
    link_author(db, source, shared)
    link_author(db, target, shared)
    link_author(db, source, only_source, role="translator")
    add_subject(db, source, "science fiction")
    add_subject(db, target, "science fiction")
    add_subject(db, source, "desert")

    add_event(db, "u1", source, finished_at=date(2024, 5, 1))
    add_event(db, "u1", target, finished_at=date(2023, 1, 1))
    add_event(db, "u2", source, rating=4)

    add_rating(db, source, "openlibrary", 4.4, 900, last_updated=NOW)
    add_rating(db, target, "openlibrary", 4.0, 100, last_updated=NOW - timedelta(days=30))
    add_rating(db, source, "googlebooks", 4.1, 50)

    db.add_all(
        [
            ResolverCache(lookup_key="asin:B0DUNE", item_id=source.id, confidence=0.9),
            ResolverLog(input_key="asin:B0DUNE", path_taken="asin", item_id=source.id, confidence=0.9, created=True),
            Block(user_id="u3", item_id=source.id),
            WorkQuality(item_id=source.id, blended_avg=4.2, blended_wilson=0.7, total_ratings=950),
            GraphFeature(item_id=source.id, author_affinity=0.5, subject_overlap=0.1, same_series=False, prox_score=0.3),
        ]
    )
    db.commit()
    return source.id, target.id


def _rows_referencing(db, item_id):
    """Every row in any table whose item foreign key points at item_id."""
    found = {}
    for table in Base.metadata.sorted_tables:
        for fk in table.foreign_keys:
            if fk.column.table.name != "catalog_items":
                continue
            count = db.query(table).filter(fk.parent == item_id).count()
            if count:
                found[table.name] = count
    return found


def test_merge_with_editions_already_loaded(db):
    a = add_item(db, "Dune")
    b = add_item(db, "Dune")
    add_edition(db, a, isbn13="9780441013593")
    add_edition(db, b, isbn13="9780441013593")
    db.commit()
    a_id, b_id = a.id, b.id
    before = len(a.editions) + len(b.editions)

    info = merge_works(db, a_id, b_id, "Shared identifier: isbn13")

    assert info.editions_moved == 1
    assert db.get(CatalogItem, a_id) is None
    assert len(db.get(CatalogItem, b_id).editions) == before


def test_merge_moves_everything_and_deletes_source(db, duplicate_pair):
    source_id, target_id = duplicate_pair
    editions_before = db.query(CatalogEdition).filter(CatalogEdition.item_id.in_([source_id, target_id])).count()

    info = merge_works(db, source_id, target_id, "Shared identifier: isbn13")

    assert info.editions_moved == 2
    assert db.get(CatalogItem, source_id) is None
    assert _rows_referencing(db, source_id) == {}
    assert db.query(CatalogEdition).filter(CatalogEdition.item_id == target_id).count() == editions_before

    roles = {(r.author_id, r.role) for r in db.query(ItemAuthor).filter(ItemAuthor.item_id == target_id)}
    assert len(roles) == 2
    subjects = {s for (s,) in db.query(ItemSubject.subject).filter(ItemSubject.item_id == target_id)}
    assert subjects == {"science fiction", "desert"}

    events = {e.user_id: e for e in db.query(UserEvent).filter(UserEvent.item_id == target_id)}
    assert set(events) == {"u1", "u2"}
    assert events["u1"].finished_at == date(2024, 5, 1)
    assert info.events_moved == 1 and info.events_discarded == 1

    ratings = {r.source: r for r in db.query(RatingStat).filter(RatingStat.item_id == target_id)}
    assert ratings["openlibrary"].count == 900
    assert ratings["googlebooks"].avg == pytest.approx(4.1)

    assert db.get(ResolverCache, "asin:B0DUNE").item_id == target_id
    assert db.query(ResolverLog).one().item_id == target_id
    assert db.query(Block).one().item_id == target_id
    assert db.get(WorkQuality, source_id) is None

    target = db.get(CatalogItem, target_id)
    assert target.description == "Spice."
    assert target.publish_year == 1965
    assert target.work_key == "OL1W"
    assert target.is_stub is False
    assert target.stub_reason is None

    history = get_merge_history(db, target_id)
    assert [(h.item_id_from, h.editions_moved) for h in history] == [(source_id, 2)]
    assert history[0].reason == "Shared identifier: isbn13"


def test_failed_merge_leaves_no_trace(db, duplicate_pair, monkeypatch):
    source_id, target_id = duplicate_pair

    def explode(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(identity, "_backfill", explode)
    with pytest.raises(RuntimeError):
        merge_works(db, source_id, target_id, "test")

    db.expire_all()
    assert db.get(CatalogItem, source_id) is not None
    assert db.query(CatalogEdition).filter(CatalogEdition.item_id == source_id).count() == 2
    assert db.query(UserEvent).filter(UserEvent.item_id == source_id).count() == 2
    assert db.query(MergeLog).count() == 0


def test_plan_merges_groups_overlapping_pairs():
    plan = plan_merges([(1, 2, "isbn13"), (2, 3, "asin"), (5, 6, "isbn10"), (4, 4, "self")])
    assert plan == [
        [(2, 1, "isbn13"), (3, 1, "asin")],
        [(6, 5, "isbn10")],
    ]


def test_resolve_duplicates_merges_higher_id_into_lower(file_factory):
    with file_factory() as db:
        first = add_item(db, "Dune Messiah")
        second = add_item(db, "Dune Messiah")
        lookalike = add_item(db, "Dune Messiah")
        add_edition(db, first, isbn13="9780593098233")
        add_edition(db, second, isbn13="9780593098233")
        add_edition(db, lookalike, isbn13="9780000000000")
        db.commit()
        ids = (first.id, second.id, lookalike.id)

    report = resolve_duplicates(file_factory, [ids[1]], concurrency=2)

    assert report.failed == []
    assert [(m.item_id_from, m.item_id_to) for m in report.merged] == [(ids[1], ids[0])]
    with file_factory() as db:
        assert db.get(CatalogItem, ids[1]) is None
        assert db.get(CatalogItem, ids[2]) is not None
        assert db.query(CatalogEdition).filter(CatalogEdition.item_id == ids[0]).count() == 2
