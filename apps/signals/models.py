# apps/signals/models.py
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import declarative_base, relationship

# Naming convention helps Alembic autogenerate predictable constraint names
naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}
metadata = MetaData(naming_convention=naming_convention)
Base = declarative_base(metadata=metadata)

# float[] on Postgres, JSON list elsewhere
Vector = JSON(none_as_null=True).with_variant(ARRAY(Float), "postgresql")
Document = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class CatalogItem(Base):
    __tablename__ = "catalog_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    work_key = Column(String, nullable=True, unique=True)  # external catalog key, e.g. OL work key
    title = Column(Text, nullable=False)
    subtitle = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    publish_year = Column(Integer, nullable=True)
    series = Column(Text, nullable=True)
    source = Column(String, nullable=True)  # openlibrary | googlebooks | amazon | manual
    embedding = Column(Vector, nullable=True)
    is_stub = Column(Boolean, nullable=False, default=False, server_default=false())
    stub_reason = Column(Text, nullable=True)
    community_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    editions = relationship("CatalogEdition", back_populates="item")

    __table_args__ = (Index("ix_catalog_items_community", "community_id"),)


class CatalogEdition(Base):
    __tablename__ = "catalog_editions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(
        Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), nullable=False
    )
    edition_key = Column(String, nullable=True, unique=True)
    # not unique: duplicates across items are what the merge engine repairs
    isbn13 = Column(String, nullable=True, index=True)
    isbn10 = Column(String, nullable=True, index=True)
    google_volume_id = Column(String, nullable=True, index=True)
    asin = Column(String, nullable=True, index=True)
    publisher = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    item = relationship("CatalogItem", back_populates="editions")

    __table_args__ = (Index("ix_catalog_editions_item_id", "item_id"),)


class Author(Base):
    __tablename__ = "authors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    author_key = Column(String, nullable=True, unique=True)
    name = Column(Text, nullable=False)


class Subject(Base):
    __tablename__ = "subjects"

    subject = Column(Text, primary_key=True)


class ItemAuthor(Base):
    __tablename__ = "item_authors"

    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), primary_key=True)
    author_id = Column(Integer, ForeignKey("authors.id", ondelete="CASCADE"), primary_key=True)
    role = Column(String, primary_key=True, default="author", server_default="author")

    __table_args__ = (Index("ix_item_authors_author_item", "author_id", "item_id"),)


class ItemSubject(Base):
    __tablename__ = "item_subjects"

    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), primary_key=True)
    subject = Column(Text, ForeignKey("subjects.subject", ondelete="CASCADE"), primary_key=True)


class RatingStat(Base):
    __tablename__ = "rating_stats"

    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), primary_key=True)
    source = Column(String, primary_key=True)  # openlibrary | googlebooks
    avg = Column(Float, nullable=True)
    count = Column(Integer, nullable=True)
    last_updated = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UserEvent(Base):
    __tablename__ = "user_events"

    user_id = Column(String, primary_key=True)
    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), primary_key=True)
    source = Column(String, primary_key=True)  # goodreads | kindle | manual
    shelf = Column(String, nullable=True)  # read | currently-reading | to-read | dnf
    rating = Column(Float, nullable=True)
    finished_at = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_user_events_user_shelf", "user_id", "shelf"),)


class Block(Base):
    __tablename__ = "blocks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), nullable=True)
    author_id = Column(Integer, ForeignKey("authors.id", ondelete="CASCADE"), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "item_id", name="uq_blocks_user_item"),
        UniqueConstraint("user_id", "author_id", name="uq_blocks_user_author"),
    )


class ReadingSession(Base):
    __tablename__ = "reading_sessions"

    user_id = Column(String, primary_key=True)
    asin = Column(String, primary_key=True)
    start_at = Column(DateTime(timezone=True), primary_key=True)
    source = Column(String, primary_key=True)  # ri_adjusted | ereader_active | legacy_session
    end_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)


class ReadingDay(Base):
    __tablename__ = "reading_days"

    user_id = Column(String, primary_key=True)
    day = Column(Date, primary_key=True)
    source = Column(String, primary_key=True, default="ri_day_units")


class ReadingAggregate(Base):
    __tablename__ = "reading_aggregates"

    user_id = Column(String, primary_key=True)
    asin = Column(String, primary_key=True)
    total_ms = Column(Float, nullable=False, default=0)
    sessions = Column(Integer, nullable=False, default=0)
    last_read_at = Column(DateTime(timezone=True), nullable=True)
    avg_session_ms = Column(Float, nullable=True)
    max_session_ms = Column(Float, nullable=True)
    last_30d_ms = Column(Float, nullable=False, default=0)
    streak_days = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CuratedList(Base):
    __tablename__ = "curated_lists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    list_key = Column(String, nullable=False, unique=True)
    owner_key = Column(String, nullable=False)
    name = Column(Text, nullable=False)


class CuratedListEntry(Base):
    __tablename__ = "curated_list_entries"

    list_id = Column(Integer, ForeignKey("curated_lists.id", ondelete="CASCADE"), primary_key=True)
    item_key = Column(String, primary_key=True)

    __table_args__ = (Index("ix_curated_list_entries_item", "item_key"),)


class ReadingLog(Base):
    __tablename__ = "reading_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_key = Column(String, nullable=False)
    reader_key = Column(String, nullable=False)
    status = Column(String, nullable=False)  # want-to-read | currently-reading | already-read
    logged_date = Column(Date, nullable=True)

    __table_args__ = (
        Index("ix_reading_logs_item", "item_key"),
        Index("ix_reading_logs_reader", "reader_key"),
    )


class ResolverCache(Base):
    __tablename__ = "resolver_cache"

    lookup_key = Column(String, primary_key=True)  # e.g. isbn:9780123456789
    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)


class ResolverLog(Base):
    __tablename__ = "resolver_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    input_key = Column(String, nullable=False)
    path_taken = Column(String, nullable=True)  # isbn_ol | isbn_gb | title_gb | asin | manual
    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="SET NULL"), nullable=True)
    confidence = Column(Float, nullable=True)
    created = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class WorkQuality(Base):
    __tablename__ = "work_quality"

    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), primary_key=True)
    blended_avg = Column(Float, nullable=False)
    blended_wilson = Column(Float, nullable=False)
    total_ratings = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class GraphFeature(Base):
    __tablename__ = "graph_features"

    item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete="CASCADE"), primary_key=True)
    author_affinity = Column(Float, nullable=False, default=0.0)
    subject_overlap = Column(Float, nullable=False, default=0.0)
    same_series = Column(Boolean, nullable=False, default=False)
    community_id = Column(Integer, nullable=True)
    prox_score = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_graph_features_prox", "prox_score"),)


class Cooccurrence(Base):
    __tablename__ = "cooccurrence"

    item_key_a = Column(String, primary_key=True)
    item_key_b = Column(String, primary_key=True)
    overlap = Column(Integer, nullable=False)
    jaccard = Column(Float, nullable=False)
    readers_a = Column(Integer, nullable=True)
    readers_b = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_cooccurrence_a_jaccard", "item_key_a", "jaccard"),
        Index("ix_cooccurrence_b_jaccard", "item_key_b", "jaccard"),
    )


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String, primary_key=True)
    profile_vec = Column(Vector, nullable=True)
    anchors = Column(Document, nullable=True)  # ordered [{item_id, title, weight}]
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class MergeLog(Base):
    __tablename__ = "merge_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id_from = Column(Integer, nullable=False)
    item_id_to = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    editions_moved = Column(Integer, nullable=False, default=0)
    merged_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_merge_log_to", "item_id_to"),)
