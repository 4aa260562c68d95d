from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import get_settings


class Base(DeclarativeBase):
    pass


def _build_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, Any] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


engine = _build_engine()


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_conn: Any, connection_record: Any) -> None:
    # SQLite ignores ON DELETE clauses unless this pragma is set per connection.
    module_name = type(dbapi_conn).__module__
    if not module_name.startswith("sqlite3"):
        return
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Run a unit of work on ``session`` and commit it as one.

    Any exception raised inside the block rolls back every statement issued
    since the block started and is re-raised to the caller.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
