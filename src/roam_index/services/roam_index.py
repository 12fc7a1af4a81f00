"""The index object owned by the host application.

``RoamIndex`` wires the discoverer, extractor, graph store, caches, builder
and maintainer together for one note directory. It enforces the
single-writer model (one full scan or hook at a time) and refuses queries
until the first full scan has completed.
"""
import logging
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, List, Optional, Set, Tuple

from sqlalchemy.engine import Engine

from roam_index.config import RoamConfig
from roam_index.exceptions import (DatabaseCorruptionError, ErrorCode,
                                   IndexNotReadyError, StorageError)
from roam_index.models.db_models import init_db
from roam_index.models.schema import (Backlink, Ref, RenameResult, ScanStats,
                                     utc_now)
from roam_index.services.caches import DerivedCaches
from roam_index.services.index_builder import IndexBuilder
from roam_index.services.maintainer import ConsistencyMaintainer
from roam_index.storage.extractor import LinkExtractor
from roam_index.storage.files import ContentReader, Decryptor, FileDiscoverer
from roam_index.storage.graph_store import GraphStore
from roam_index.utils import PathLike, canonical_path, path_to_slug

logger = logging.getLogger(__name__)


class RoamIndex:
    """Live index over one note directory.

    Args:
        cfg: Index configuration.
        engine: Existing SQLAlchemy engine. When omitted, one is created
            from ``cfg.get_db_url()`` and disposed by :meth:`close`.
        decryptor: Turns encrypted note bytes into plaintext.

    Example:
        with RoamIndex(RoamConfig(directory="~/notes")) as index:
            index.build_index()
            for backlink in index.backlinks("~/notes/idea.org"):
                print(backlink.source, backlink.excerpt)
    """

    def __init__(
        self,
        cfg: Optional[RoamConfig] = None,
        engine: Optional[Engine] = None,
        decryptor: Optional[Decryptor] = None,
    ) -> None:
        self.config = cfg or RoamConfig()
        self.root = self.config.get_root()
        self._owns_engine = engine is None
        self.engine = engine if engine is not None else self._open_database()

        self.store = GraphStore(self.engine, slugify=self.slugify)
        self.discoverer = FileDiscoverer.from_config(self.config)
        self.reader = ContentReader(self.discoverer, decryptor=decryptor)
        self.extractor = LinkExtractor.from_config(self.config, self.discoverer)
        self.caches = DerivedCaches()
        self.builder = IndexBuilder(
            self.store, self.discoverer, self.reader, self.extractor, self.caches
        )
        self.maintainer = ConsistencyMaintainer(
            self.builder, self.caches, slugify=self.slugify
        )

        # Held by every full scan and every hook
        self._write_lock = threading.Lock()
        self._ready = threading.Event()
        self._state_lock = threading.Lock()
        self._cancel_event: Optional[threading.Event] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    def _open_database(self) -> Engine:
        """Create the engine, recreating the database file if it is damaged.

        A recreated database is empty; the first full scan repopulates it.
        """
        try:
            return init_db(self.config.get_db_url())
        except DatabaseCorruptionError as e:
            if self.config.in_memory_db:
                raise
            logger.error(f"Database corrupted on startup, recreating it: {e}")
        return self._reset_database_file()

    def _reset_database_file(self) -> Engine:
        """Back up the database file, delete it and initialise a fresh one.

        Returns:
            Engine bound to the new, empty database.

        Raises:
            DatabaseCorruptionError: With DATABASE_RECOVERY_FAILED if the
                file cannot be removed or the new database cannot be created.
        """
        db_path = self.config.get_absolute_path(self.config.database_path)
        backup_path = None
        if db_path.exists():
            timestamp = utc_now().strftime("%Y%m%d_%H%M%S")
            backup_path = db_path.with_name(f"{db_path.stem}.backup.{timestamp}.bak")
            try:
                shutil.copy(db_path, backup_path)
                logger.info(f"Backed up database to: {backup_path}")
            except OSError as e:
                logger.warning(f"Could not back up database: {e}")
                backup_path = None

        backup = str(backup_path) if backup_path else None
        try:
            # SQLite keeps the WAL and shared-memory files beside the database
            for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
                if path.exists():
                    path.unlink()
        except OSError as e:
            raise DatabaseCorruptionError(
                f"Failed to delete database: {e}",
                backup_path=backup,
                code=ErrorCode.DATABASE_RECOVERY_FAILED,
                original_error=e,
            ) from e

        try:
            engine = init_db(self.config.get_db_url())
        except StorageError as e:
            raise DatabaseCorruptionError(
                f"Failed to recreate database: {e.message}",
                backup_path=backup,
                code=ErrorCode.DATABASE_RECOVERY_FAILED,
                original_error=e,
            ) from e
        logger.warning(f"Database at {db_path} recreated; a full scan will repopulate it")
        return engine

    def slugify(self, path: str) -> str:
        """Display label of a note without titles: its root-relative path."""
        return path_to_slug(
            path,
            self.root,
            self.config.encrypted_extension,
            self.config.file_extensions,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        """Whether a full scan has completed, so queries can be answered."""
        return self._ready.is_set()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the first full scan completes.

        Returns:
            True if the index is ready, False on timeout.
        """
        return self._ready.wait(timeout)

    def build_index(
        self,
        root: Optional[PathLike] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScanStats:
        """Run a full incremental scan, blocking until it is committed.

        Args:
            root: Directory to scan. Defaults to the configured directory.
            cancel_event: Stops the scan before it commits when set.

        Raises:
            ConfigurationError: If the directory does not exist.
            ScanCancelledError: If cancelled; the store is unchanged.
            DatabaseCorruptionError: If the database file is damaged.
        """
        scan_root = Path(root).expanduser() if root is not None else self.root
        with self._write_lock:
            if not self.config.in_memory_db:
                self.store.check_integrity()
            stats = self.builder.build(scan_root, cancel_event=cancel_event)
            self._ready.set()
        return stats

    def rebuild(self, root: Optional[PathLike] = None) -> ScanStats:
        """Re-extract every note and replace the whole store in one commit.

        This is the recovery path after store corruption. Readers keep
        seeing the previous graph until the scan commits. A database file
        that fails its integrity check is backed up and recreated first;
        queries raise IndexNotReadyError until the scan has refilled it.

        Raises:
            DatabaseCorruptionError: If a damaged database cannot be
                recreated, or its engine was supplied by the caller.
        """
        scan_root = Path(root).expanduser() if root is not None else self.root
        with self._write_lock:
            if not self.config.in_memory_db:
                try:
                    self.store.check_integrity()
                except DatabaseCorruptionError as e:
                    if not self._owns_engine:
                        raise
                    logger.error(f"Recreating corrupted database before rebuild: {e}")
                    self._ready.clear()
                    self.engine.dispose()
                    self.engine = self._reset_database_file()
                    self.store.rebind(self.engine)
            logger.info(f"Full rebuild of {scan_root}")
            stats = self.builder.build(scan_root, full=True)
            self._ready.set()
        return stats

    def start_build(self, root: Optional[PathLike] = None) -> "Future[ScanStats]":
        """Run :meth:`build_index` on a background worker.

        Queries keep raising IndexNotReadyError until the first scan has
        committed and the caches are rebuilt. Use :meth:`cancel_build` to
        stop the scan before it commits.
        """
        cancel_event = threading.Event()
        with self._state_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.background_workers,
                    thread_name_prefix="roam-index-build",
                )
            self._cancel_event = cancel_event
            future = self._executor.submit(self.build_index, root, cancel_event)
        future.add_done_callback(lambda _: self._forget_cancel_event(cancel_event))
        logger.debug("Background build submitted")
        return future

    def _forget_cancel_event(self, event: threading.Event) -> None:
        with self._state_lock:
            if self._cancel_event is event:
                self._cancel_event = None

    def cancel_build(self) -> bool:
        """Ask the most recent background scan to stop before it commits.

        Returns:
            True if there was a scan to cancel.
        """
        with self._state_lock:
            event = self._cancel_event
        if event is None or event.is_set():
            return False
        event.set()
        logger.info("Background build cancellation requested")
        return True

    def close(self) -> None:
        """Stop the background worker and release the database."""
        with self._state_lock:
            if self._cancel_event is not None:
                self._cancel_event.set()
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        if self._owns_engine:
            self.engine.dispose()

    def __enter__(self) -> "RoamIndex":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def on_save(self, path: PathLike) -> bool:
        """Re-index ``path`` after it was written. True if the store changed."""
        with self._write_lock:
            return self.maintainer.on_save(path)

    def on_delete(self, path: PathLike) -> bool:
        """Drop ``path`` after its file was deleted. True if it was indexed."""
        with self._write_lock:
            return self.maintainer.on_delete(path)

    def on_rename(self, old_path: PathLike, new_path: PathLike) -> RenameResult:
        """Move a note's index entry and rewrite links pointing at it.

        Raises:
            RenameCollisionError: If ``new_path`` is already indexed.
        """
        with self._write_lock:
            return self.maintainer.on_rename(old_path, new_path)

    def register_hooks(self, notifier: Any) -> None:
        """Attach the hooks to a notifier exposing ``subscribe(event, callback)``.

        Subscribes to the ``save``, ``rename`` and ``delete`` events.
        """
        notifier.subscribe("save", self.on_save)
        notifier.subscribe("rename", self.on_rename)
        notifier.subscribe("delete", self.on_delete)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _require_ready(self, operation: str) -> None:
        if not self._ready.is_set():
            raise IndexNotReadyError(operation)

    def completions(self) -> List[Tuple[str, str]]:
        """``(label, path)`` per title or alias; untitled notes use their slug."""
        self._require_ready("completions")
        return self.caches.completions(self.slugify)

    def backlinks(self, path: PathLike) -> List[Backlink]:
        """Notes linking to ``path``, with excerpt and offset of each link."""
        self._require_ready("backlinks")
        return self.store.backlinks_to(canonical_path(path))

    def backlink_sources(self, path: PathLike) -> Set[str]:
        """Paths of the notes linking to ``path``, from the derived caches."""
        self._require_ready("backlink_sources")
        return self.caches.backlink_sources(canonical_path(path))

    def forward_links(self, path: PathLike) -> List[str]:
        """Distinct link targets of ``path`` in document order."""
        self._require_ready("forward_links")
        return self.caches.forward_links(canonical_path(path))

    def titles_of(self, path: PathLike) -> List[str]:
        self._require_ready("titles_of")
        return self.caches.titles_of(canonical_path(path))

    def title_or_slug(self, path: PathLike) -> str:
        """First title of ``path``, or its slug when it has none."""
        self._require_ready("title_or_slug")
        key = canonical_path(path)
        titles = self.caches.titles_of(key)
        return titles[0] if titles else self.slugify(key)

    def resolve_ref(self, key: str) -> Optional[str]:
        """Path of the note carrying reference ``key``, if any."""
        self._require_ready("resolve_ref")
        return self.store.resolve_key(key.strip())

    def ref_of(self, path: PathLike) -> Optional[Ref]:
        """Reference key carried by ``path``, if any."""
        self._require_ready("ref_of")
        refs = self.store.refs_of(canonical_path(path))
        return refs[0] if refs else None

    def is_indexed(self, path: PathLike) -> bool:
        self._require_ready("is_indexed")
        return self.store.is_indexed(canonical_path(path))
