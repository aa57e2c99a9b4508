"""Database engine, session factory and declarative base."""

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


_engines: dict[str, Engine] = {}


def get_engine(database_url: str) -> Engine:
    """Return a cached engine for the given URL.

    SQLite engines allow cross-thread use: the pipeline polls status and
    accepts pause requests from threads other than the one running it.
    In-memory SQLite shares a single connection so every session sees the
    same database.
    """
    engine = _engines.get(database_url)
    if engine is not None:
        return engine

    kwargs: dict = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
        else:
            db_path = database_url.split("///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, **kwargs)
    _engines[database_url] = engine
    return engine


def init_db(database_url: str) -> None:
    """Create all tables that don't exist yet."""
    # Register models on the metadata
    from castwriter.models import episode  # noqa: F401

    Base.metadata.create_all(get_engine(database_url))


def get_session_factory(database_url: str) -> sessionmaker:
    # Repositories return detached records; keep their loaded state after commit.
    return sessionmaker(bind=get_engine(database_url), expire_on_commit=False)
