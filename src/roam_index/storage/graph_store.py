"""Graph store: the durable files / titles / links / refs relations.

This is the single source of truth of the index. Every mutation runs in
one SQLAlchemy session and commits once, and all public methods serialise
on one re-entrant lock, so a reader sees a note either before or after a
replacement, never half-way through one.
"""
import datetime
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, insert, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.orm import Session

from roam_index.exceptions import (DatabaseCorruptionError, NoteNotFoundError,
                                   StorageError)
from roam_index.models.db_models import (DBFile, DBLink, DBRef, DBTitles,
                                         get_session_factory,
                                         is_corruption_error)
from roam_index.models.schema import Backlink, Link, NoteRecord, Ref, utc_now
from roam_index.utils import path_to_slug

logger = logging.getLogger(__name__)


class GraphStore:
    """Repository for the note graph.

    Args:
        engine: SQLAlchemy engine (see ``init_db``).
        slugify: Derives the display label of a note without titles.
            Defaults to the file name without its note extension.
    """

    def __init__(
        self,
        engine: Engine,
        slugify: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.engine = engine
        self.session_factory = get_session_factory(engine)
        self.slugify = slugify or (lambda path: path_to_slug(path, None))
        self._lock = threading.RLock()

    def rebind(self, engine: Engine) -> None:
        """Point the store at a new engine, e.g. after the database was recreated."""
        with self._lock:
            self.engine = engine
            self.session_factory = get_session_factory(engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self, operation: str, commit: bool = False) -> Iterator[Session]:
        """Open a locked session; commit on success when ``commit`` is set.

        Database errors are re-raised as StorageError, or as
        DatabaseCorruptionError when SQLite reports a damaged file.
        """
        with self._lock:
            with self.session_factory() as session:
                try:
                    yield session
                    if commit:
                        session.commit()
                except SQLAlchemyDatabaseError as e:
                    session.rollback()
                    if is_corruption_error(e):
                        raise DatabaseCorruptionError(
                            f"Database corrupted during {operation}", original_error=e
                        ) from e
                    raise StorageError(
                        f"Database error during {operation}",
                        operation=operation,
                        original_error=e,
                    ) from e

    @staticmethod
    def _require_note(session: Session, path: str) -> None:
        if session.get(DBFile, path) is None:
            raise NoteNotFoundError(path)

    # ------------------------------------------------------------------
    # Row writers (caller owns the session and the commit)
    # ------------------------------------------------------------------

    @staticmethod
    def _write_file(
        session: Session, path: str, hash: str, scanned_at: datetime.datetime
    ) -> None:
        session.merge(DBFile(path=path, hash=hash, scanned_at=scanned_at))

    @staticmethod
    def _write_titles(session: Session, path: str, titles: List[str]) -> None:
        session.merge(DBTitles(path=path, titles=list(titles)))

    @staticmethod
    def _write_links(session: Session, path: str, links: List[Link]) -> int:
        session.execute(delete(DBLink).where(DBLink.from_path == path))
        rows = [
            {
                "from_path": path,
                "to_path": link.target,
                "excerpt": link.excerpt,
                "offset": link.offset,
            }
            for link in links
        ]
        if rows:
            session.execute(insert(DBLink), rows)
        return len(rows)

    @staticmethod
    def _write_ref(session: Session, path: str, ref: Optional[Ref]) -> None:
        session.execute(delete(DBRef).where(DBRef.path == path))
        if ref is None:
            return
        previous = session.get(DBRef, ref.key)
        if previous is not None:
            logger.info(
                f"Reference key '{ref.key}' moves from {previous.path} to {path}"
            )
            session.delete(previous)
            session.flush()
        session.add(DBRef(key=ref.key, path=path, ref_type=ref.ref_type))

    @staticmethod
    def _delete_rows(session: Session, path: str) -> bool:
        existed = session.get(DBFile, path) is not None
        session.execute(delete(DBLink).where(DBLink.from_path == path))
        session.execute(delete(DBTitles).where(DBTitles.path == path))
        session.execute(delete(DBRef).where(DBRef.path == path))
        session.execute(delete(DBFile).where(DBFile.path == path))
        return existed

    def _write_record(self, session: Session, record: NoteRecord) -> int:
        self._write_file(session, record.path, record.hash, record.scanned_at)
        self._write_titles(session, record.path, record.titles)
        self._write_ref(session, record.path, record.ref)
        return self._write_links(session, record.path, record.links)

    # ------------------------------------------------------------------
    # Per-note mutations
    # ------------------------------------------------------------------

    def upsert_note(
        self, path: str, hash: str, scanned_at: Optional[datetime.datetime] = None
    ) -> None:
        """Insert or update the file row of a note."""
        with self._session("upsert_note", commit=True) as session:
            self._write_file(session, path, hash, scanned_at or utc_now())

    def replace_titles(self, path: str, titles: List[str]) -> None:
        """Replace the title list of an indexed note.

        Raises:
            NoteNotFoundError: If the note has no file row.
        """
        with self._session("replace_titles", commit=True) as session:
            self._require_note(session, path)
            self._write_titles(session, path, titles)

    def replace_links(self, path: str, links: List[Link]) -> int:
        """Replace every outbound link of an indexed note.

        Returns:
            Number of link rows inserted.

        Raises:
            NoteNotFoundError: If the note has no file row.
        """
        with self._session("replace_links", commit=True) as session:
            self._require_note(session, path)
            return self._write_links(session, path, links)

    def replace_ref(self, path: str, ref: Optional[Ref]) -> None:
        """Attach ``ref`` to an indexed note (None detaches its key).

        A key already attached to another note moves to this one.
        """
        with self._session("replace_ref", commit=True) as session:
            self._require_note(session, path)
            self._write_ref(session, path, ref)

    def replace_note(self, record: NoteRecord) -> int:
        """Replace everything stored for one note in a single transaction.

        Returns:
            Number of link rows inserted.
        """
        with self._session("replace_note", commit=True) as session:
            return self._write_record(session, record)

    def delete_note(self, path: str) -> bool:
        """Delete a note with its titles, outbound links and refs.

        Returns:
            True if the note was indexed.
        """
        with self._session("delete_note", commit=True) as session:
            return self._delete_rows(session, path)

    # ------------------------------------------------------------------
    # Bulk mutations
    # ------------------------------------------------------------------

    def apply_scan(
        self,
        records: Iterable[NoteRecord],
        deletions: Iterable[str],
        reset: bool = False,
    ) -> Tuple[int, int]:
        """Apply the staged result of a full scan in one transaction.

        Args:
            records: Full replacements for new or changed notes.
            deletions: Paths of notes whose file vanished.
            reset: Empty every relation first, so ``records`` become the
                whole store. Readers see the old or the new graph, never
                an empty one.

        Returns:
            ``(links_inserted, notes_deleted)``.
        """
        links = 0
        deleted = 0
        with self._session("apply_scan", commit=True) as session:
            if reset:
                deleted = sum(
                    1 for path in deletions if session.get(DBFile, path) is not None
                )
                self._clear_rows(session)
            else:
                for path in deletions:
                    if self._delete_rows(session, path):
                        deleted += 1
            for record in records:
                links += self._write_record(session, record)
        return links, deleted

    @staticmethod
    def _clear_rows(session: Session) -> None:
        for model in (DBLink, DBTitles, DBRef, DBFile):
            session.execute(delete(model))

    def clear(self) -> None:
        """Remove every row from the four relations."""
        with self._session("clear", commit=True) as session:
            self._clear_rows(session)
        logger.info("Graph store cleared")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all_notes(self) -> Dict[str, str]:
        """Map every indexed path to its content hash."""
        with self._session("all_notes") as session:
            return dict(session.execute(select(DBFile.path, DBFile.hash)).all())

    def is_indexed(self, path: str) -> bool:
        with self._session("is_indexed") as session:
            return session.get(DBFile, path) is not None

    def hash_of(self, path: str) -> Optional[str]:
        """Stored content hash of a note, or None if it is not indexed."""
        with self._session("hash_of") as session:
            row = session.get(DBFile, path)
            return row.hash if row is not None else None

    def titles_of(self, path: str) -> List[str]:
        with self._session("titles_of") as session:
            row = session.get(DBTitles, path)
            return list(row.titles) if row is not None else []

    def all_titles(self) -> Dict[str, List[str]]:
        """Map every indexed path to its (possibly empty) title list."""
        with self._session("all_titles") as session:
            result: Dict[str, List[str]] = {
                path: [] for path in session.scalars(select(DBFile.path))
            }
            for path, titles in session.execute(select(DBTitles.path, DBTitles.titles)):
                result[path] = list(titles or [])
            return result

    def backlinks_to(self, path: str) -> List[Backlink]:
        """Every link pointing at ``path``, ordered by source then offset."""
        with self._session("backlinks_to") as session:
            rows = session.execute(
                select(DBLink.from_path, DBLink.excerpt, DBLink.offset)
                .where(DBLink.to_path == path)
                .order_by(DBLink.from_path, DBLink.offset)
            ).all()
            return [
                Backlink(source=source, excerpt=excerpt, offset=offset)
                for source, excerpt, offset in rows
            ]

    def forward_links_of(self, path: str) -> List[Link]:
        """Outbound links of ``path`` in document order."""
        with self._session("forward_links_of") as session:
            rows = session.scalars(
                select(DBLink).where(DBLink.from_path == path).order_by(DBLink.offset)
            ).all()
            return [self._to_link(row) for row in rows]

    def all_links(self) -> List[Link]:
        with self._session("all_links") as session:
            rows = session.scalars(
                select(DBLink).order_by(DBLink.from_path, DBLink.offset)
            ).all()
            return [self._to_link(row) for row in rows]

    def resolve_key(self, key: str) -> Optional[str]:
        """Path of the note carrying reference ``key``, if any."""
        with self._session("resolve_key") as session:
            row = session.get(DBRef, key)
            return row.path if row is not None else None

    def refs_of(self, path: str) -> List[Ref]:
        with self._session("refs_of") as session:
            rows = session.scalars(select(DBRef).where(DBRef.path == path)).all()
            return [Ref(key=row.key, ref_type=row.ref_type) for row in rows]

    def all_title_completions(self) -> List[Tuple[str, str]]:
        """One ``(label, path)`` pair per title or alias.

        Notes without titles contribute a single pair labelled with their slug.
        """
        completions: List[Tuple[str, str]] = []
        for path, titles in sorted(self.all_titles().items()):
            if titles:
                completions.extend((title, path) for title in titles)
            else:
                completions.append((self.slugify(path), path))
        return completions

    def counts(self) -> Dict[str, int]:
        """Row counts per relation."""
        with self._session("counts") as session:
            return {
                model.__tablename__: session.scalar(
                    select(func.count()).select_from(model)
                )
                for model in (DBFile, DBTitles, DBLink, DBRef)
            }

    def check_integrity(self) -> None:
        """Run SQLite's integrity check.

        Raises:
            DatabaseCorruptionError: If the database file is damaged.
        """
        with self._session("check_integrity") as session:
            result = session.execute(text("PRAGMA integrity_check")).scalar()
        if result != "ok":
            raise DatabaseCorruptionError(f"Integrity check failed: {result}")

    @staticmethod
    def _to_link(row: DBLink) -> Link:
        return Link(
            source=row.from_path,
            target=row.to_path,
            excerpt=row.excerpt,
            offset=row.offset,
        )
