# apps/signals/embedding_utils.py
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from openai import OpenAI
from sqlalchemy.orm import Session

from config import settings
from db import batch_transaction
from models import Author, CatalogItem, ItemAuthor, ItemSubject

log = logging.getLogger("embeddings")

DESCRIPTION_MAX_CHARS = 2000
MAX_TOPICS = 10

Embedder = Callable[[str], Optional[Sequence[float]]]


def _truncate(text: str, max_chars: int, suffix: str = "...") -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - len(suffix)].strip() + suffix


def build_item_embedding_text(
    *,
    title: str,
    subtitle: Optional[str] = None,
    authors: Iterable[str] = (),
    description: Optional[str] = None,
    subjects: Iterable[str] = (),
) -> str:
    """Title, subtitle, authors, description and leading subjects joined as sentences."""
    parts: List[str] = []
    if title and title.strip():
        parts.append(title.strip())
    if subtitle and subtitle.strip():
        parts.append(subtitle.strip())

    names = [a.strip() for a in authors if a and a.strip()]
    if names:
        parts.append("By " + ", ".join(names))

    if description and description.strip():
        parts.append(_truncate(description.strip(), DESCRIPTION_MAX_CHARS))

    topics = [s.strip() for s in subjects if s and s.strip()][:MAX_TOPICS]
    if topics:
        parts.append("Topics: " + ", ".join(topics))
    return ". ".join(parts)


def _get_client() -> Optional[OpenAI]:
    api_key = (settings.openai_api_key or "").strip()
    if not api_key:
        log.info("openai_embeddings_disabled: missing OPENAI_API_KEY")
        return None
    try:
        return OpenAI(api_key=api_key)
    except Exception as exc:
        log.warning("openai_client_error: %s", exc)
        return None


def generate_embedding(text: str, client: Optional[OpenAI] = None) -> Optional[Sequence[float]]:
    text = (text or "").strip()
    if not text:
        log.info("openai_embeddings_skipped: empty text")
        return None

    client = client or _get_client()
    if not client:
        return None

    model = settings.openai_embedding_model or "text-embedding-3-small"
    try:
        response = client.embeddings.create(model=model, input=text)
    except Exception as exc:
        log.warning("openai_embeddings_failed: %s", exc)
        return None

    data = response.data[0]
    vector = getattr(data, "embedding", None)
    if not vector:
        log.warning("openai_embeddings_missing_vector: data=%s", data)
        return None
    return vector


def _grouped(rows) -> Dict[int, List[str]]:
    out: Dict[int, List[str]] = {}
    for item_id, value in rows:
        out.setdefault(item_id, []).append(value)
    return out


def embed_missing_items(
    db: Session,
    embedder: Optional[Embedder] = None,
    limit: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> int:
    """
    Fill CatalogItem.embedding for items that lack one. Items the embedder
    cannot handle are logged and left for a later run. Returns items embedded.
    """
    embedder = embedder or generate_embedding
    batch_size = batch_size or settings.embed_batch_size
    started = time.monotonic()

    query = db.query(CatalogItem).filter(CatalogItem.embedding.is_(None)).order_by(CatalogItem.id)
    if limit:
        query = query.limit(limit)
    pending = query.all()
    if not pending:
        log.info("embed_nothing_pending")
        return 0

    embedded = 0
    skipped = 0
    for batch_no, start in enumerate(range(0, len(pending), batch_size), start=1):
        items = pending[start:start + batch_size]
        ids = [item.id for item in items]
        authors = _grouped(
            db.query(ItemAuthor.item_id, Author.name)
            .join(Author, Author.id == ItemAuthor.author_id)
            .filter(ItemAuthor.item_id.in_(ids))
            .order_by(ItemAuthor.item_id, Author.name)
        )
        subjects = _grouped(
            db.query(ItemSubject.item_id, ItemSubject.subject)
            .filter(ItemSubject.item_id.in_(ids))
            .order_by(ItemSubject.item_id, ItemSubject.subject)
        )

        with batch_transaction(db, "embed", batch_no):
            for item in items:
                text = build_item_embedding_text(
                    title=item.title,
                    subtitle=item.subtitle,
                    authors=authors.get(item.id, []),
                    description=item.description,
                    subjects=subjects.get(item.id, []),
                )
                vector = embedder(text)
                if not vector:
                    skipped += 1
                    log.warning("embed_item_skipped item=%s", item.id)
                    continue
                item.embedding = [float(x) for x in vector]
                embedded += 1
        log.info("embed_batch_ok batch=%d rows=%d", batch_no, len(items))

    log.info(
        "embed_done embedded=%d skipped=%d elapsed=%.2fs",
        embedded, skipped, time.monotonic() - started,
    )
    return embedded
