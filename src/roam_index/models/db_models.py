"""SQLAlchemy database models for roam-index.

Four relations share ``path`` as their join key: files, titles, links and
refs. A small ``meta`` table records the schema version; a database written
by a different version is dropped and recreated, and the next full scan
repopulates it.
"""
import logging
from typing import Optional

from sqlalchemy import (JSON, Column, DateTime, Integer, String, Text,
                        create_engine, event, inspect, select)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from roam_index.exceptions import DatabaseCorruptionError, StorageError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3

_CORRUPTION_MARKERS = ("malformed", "not a database", "corrupt")


def is_corruption_error(error: Exception) -> bool:
    """Whether SQLite reported ``error`` because the database file is damaged."""
    message = str(error).lower()
    return any(marker in message for marker in _CORRUPTION_MARKERS)

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBFile(Base):
    """One row per indexed note."""
    __tablename__ = "files"
    path = Column(Text, primary_key=True)
    hash = Column(String(64), nullable=False)
    scanned_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<File(path='{self.path}', hash='{self.hash[:8]}')>"


class DBTitles(Base):
    """Title list of a note; the first entry is canonical, the rest aliases."""
    __tablename__ = "titles"
    path = Column(Text, primary_key=True)
    titles = Column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<Titles(path='{self.path}', titles={self.titles!r})>"


class DBLink(Base):
    """A link row, owned by its source note.

    No uniqueness constraint: two links between the
    same pair of notes carry different context and are both kept.
    """
    __tablename__ = "links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    from_path = Column(Text, nullable=False, index=True)
    to_path = Column(Text, nullable=False, index=True)
    excerpt = Column(Text, nullable=False, default="")
    offset = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<Link(id={self.id}, from='{self.from_path}', "
            f"to='{self.to_path}', offset={self.offset})>"
        )


class DBRef(Base):
    """An external reference key; each key resolves to one note."""
    __tablename__ = "refs"
    key = Column(Text, primary_key=True)
    path = Column(Text, nullable=False, index=True)
    ref_type = Column(String(50), nullable=False, default="ref")

    def __repr__(self) -> str:
        return f"<Ref(key='{self.key}', path='{self.path}', type='{self.ref_type}')>"


class DBMeta(Base):
    """Key/value bookkeeping for the database itself."""
    __tablename__ = "meta"
    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)


def init_db(db_url: str = "sqlite://") -> Engine:
    """Create an engine for ``db_url`` and make sure the schema is current.

    In-memory databases share one connection across threads through a
    StaticPool. File databases run in WAL mode so readers are not blocked
    by the single writer.

    Raises:
        DatabaseCorruptionError: If the database file is damaged.
        StorageError: For any other database error while preparing the schema.
    """
    in_memory = db_url in ("sqlite://", "sqlite:///:memory:")
    if in_memory:
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    try:
        _ensure_schema(engine)
    except SQLAlchemyDatabaseError as e:
        engine.dispose()
        if is_corruption_error(e):
            raise DatabaseCorruptionError(
                f"Database at {db_url} is corrupted", original_error=e
            ) from e
        raise StorageError(
            f"Cannot open database at {db_url}",
            operation="init_db",
            original_error=e,
        ) from e
    return engine


def _stored_schema_version(engine: Engine) -> Optional[int]:
    inspector = inspect(engine)
    if not inspector.has_table(DBMeta.__tablename__):
        return None
    with engine.connect() as conn:
        value = conn.scalar(select(DBMeta.value).where(DBMeta.key == "schema_version"))
    return int(value) if value is not None else None


def _ensure_schema(engine: Engine) -> None:
    """Create tables, recreating them when the stored version is different.

    This is idempotent and safe to run on every start.
    """
    tables_exist = inspect(engine).has_table(DBFile.__tablename__)
    stored = _stored_schema_version(engine)
    if tables_exist and stored != SCHEMA_VERSION:
        logger.warning(
            f"Database schema version {stored} does not match {SCHEMA_VERSION}; "
            "dropping tables, a full scan will repopulate them"
        )
        Base.metadata.drop_all(engine)

    Base.metadata.create_all(engine)
    session_factory = get_session_factory(engine)
    with session_factory() as session:
        session.merge(DBMeta(key="schema_version", value=str(SCHEMA_VERSION)))
        session.commit()


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
