"""Tests for per-user graph affinity features."""
import pytest

from factories import add_author, add_event, add_item, add_subject, link_author
from graph_features import (
    author_affinity,
    compute_graph_features,
    get_graph_features,
    is_favorite,
    load_user_seeds,
    subject_overlap,
)
from models import Block, GraphFeature


def test_author_affinity_is_share_of_favorite_authors():
    assert author_affinity([1, 2], {1}) == 0.5
    assert author_affinity([], {1}) == 0.0
    assert author_affinity([3], {1, 2}) == 0.0


def test_subject_overlap_is_jaccard():
    assert subject_overlap(["a", "b"], {"b", "c"}) == pytest.approx(1 / 3)
    assert subject_overlap([], set()) == 0.0


def test_unrated_and_high_ratings_count_as_favorites():
    assert is_favorite(None)
    assert is_favorite(4)
    assert not is_favorite(3)


def test_candidate_with_one_of_two_favorite_authors(db):
    liked = add_item(db, "Liked", series="Saga", community_id=7)
    candidate = add_item(db, "Candidate", series="Saga", community_id=3)
    fav, other = add_author(db, "Favorite"), add_author(db, "Other")
    link_author(db, liked, fav)
    link_author(db, candidate, fav)
    link_author(db, candidate, other)
    add_subject(db, liked, "space")
    add_subject(db, candidate, "space")
    add_subject(db, candidate, "war")
    add_event(db, "u1", liked, shelf="read", rating=5)
    db.commit()

    assert compute_graph_features(db, "u1") == 1

    features = get_graph_features(db, [candidate.id])[candidate.id]
    assert features.author_affinity == 0.5
    assert features.subject_overlap == pytest.approx(0.5)
    assert features.same_series is True
    assert features.community_id == 3
    assert features.prox_score == pytest.approx(0.5)
    # items the user already has are not scored
    assert db.get(GraphFeature, liked.id) is None


def test_blocks_override_favorites(db):
    liked = add_item(db, "Liked")
    blocked_liked = add_item(db, "Blocked but rated")
    blocked_candidate = add_item(db, "Blocked candidate")
    candidate = add_item(db, "Candidate")
    kept, dropped = add_author(db, "Kept"), add_author(db, "Dropped")
    link_author(db, liked, kept)
    link_author(db, liked, dropped)
    link_author(db, blocked_liked, add_author(db, "Only via blocked item"))
    link_author(db, candidate, dropped)
    add_event(db, "u1", liked, rating=5)
    add_event(db, "u1", blocked_liked, rating=5)
    db.add_all(
        [
            Block(user_id="u1", item_id=blocked_liked.id),
            Block(user_id="u1", item_id=blocked_candidate.id),
            Block(user_id="u1", author_id=dropped.id),
        ]
    )
    db.commit()

    seeds = load_user_seeds(db, "u1")
    assert seeds.favorite_item_ids == {liked.id}
    assert seeds.favorite_author_ids == {kept.id}

    assert compute_graph_features(db, "u1") == 1
    features = get_graph_features(db, [candidate.id, blocked_candidate.id])
    assert set(features) == {candidate.id}
    assert features[candidate.id].author_affinity == 0.0


def test_user_without_read_items_gets_no_features(db):
    item = add_item(db, "Wishlist")
    add_item(db, "Candidate")
    add_event(db, "u1", item, shelf="to-read")
    db.commit()

    assert compute_graph_features(db, "u1") == 0
    assert db.query(GraphFeature).count() == 0
