# apps/signals/db.py
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, func, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import settings
from errors import TransientStoreError


def make_engine(url: Optional[str] = None, **kwargs) -> Engine:
    url = url or settings.database_url
    engine = create_engine(url, pool_pre_ping=True, future=True, **kwargs)
    if engine.dialect.name == "sqlite":
        # SQLite leaves FK enforcement off unless asked per connection
        @event.listens_for(engine, "connect")
        def _enable_fks(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    db = factory()
    try:
        yield db
    finally:
        db.close()


def healthcheck(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def insert_for(db: Session, model):
    """Dialect-specific INSERT supporting on_conflict_do_update/do_nothing."""
    name = dialect_name(db)
    if name == "postgresql":
        return pg_insert(model)
    if name == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"upsert not supported for dialect {name}")


def greatest(db: Session, a, b):
    if dialect_name(db) == "sqlite":
        return func.max(a, b)
    return func.greatest(a, b)


@contextmanager
def batch_transaction(db: Session, job: str, batch: int) -> Iterator[None]:
    """Commit one batch; on failure roll it back and raise TransientStoreError."""
    try:
        yield
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError(job, batch, exc) from exc


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps may come back naive (SQLite); they are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
