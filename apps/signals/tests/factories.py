"""Small builders for catalog and reader rows used across tests."""
from datetime import datetime, timezone

from models import (
    Author,
    CatalogEdition,
    CatalogItem,
    ItemAuthor,
    ItemSubject,
    RatingStat,
    Subject,
    UserEvent,
)

NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


def add_item(db, title="Untitled", **kwargs) -> CatalogItem:
    item = CatalogItem(title=title, **kwargs)
    db.add(item)
    db.flush()
    return item


def add_author(db, name: str) -> Author:
    author = Author(name=name)
    db.add(author)
    db.flush()
    return author


def link_author(db, item: CatalogItem, author: Author, role: str = "author") -> None:
    db.add(ItemAuthor(item_id=item.id, author_id=author.id, role=role))
    db.flush()


def add_subject(db, item: CatalogItem, subject: str) -> None:
    if db.get(Subject, subject) is None:
        db.add(Subject(subject=subject))
        db.flush()
    db.add(ItemSubject(item_id=item.id, subject=subject))
    db.flush()


def add_edition(db, item: CatalogItem, **identifiers) -> CatalogEdition:
    edition = CatalogEdition(item_id=item.id, **identifiers)
    db.add(edition)
    db.flush()
    return edition


def add_event(
    db,
    user_id: str,
    item: CatalogItem,
    shelf: str = "read",
    rating=None,
    source: str = "goodreads",
    finished_at=None,
    created_at=None,
) -> UserEvent:
    event = UserEvent(
        user_id=user_id,
        item_id=item.id,
        source=source,
        shelf=shelf,
        rating=rating,
        finished_at=finished_at,
        created_at=created_at or NOW,
    )
    db.add(event)
    db.flush()
    return event


def add_rating(db, item: CatalogItem, source: str, avg: float, count: int, last_updated=None) -> RatingStat:
    stat = RatingStat(item_id=item.id, source=source, avg=avg, count=count, last_updated=last_updated or NOW)
    db.add(stat)
    db.flush()
    return stat
