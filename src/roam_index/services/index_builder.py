"""Full incremental scan of a note directory.

The scan discovers every note, hashes its bytes and compares the digest
with the one stored for the path. Only new or changed notes are
re-extracted; notes whose file vanished are deleted. Everything the scan
stages is committed to the store in one transaction, after which the
derived caches are rebuilt. Running it again without file changes is a
no-op.
"""
import logging
import threading
from pathlib import Path
from typing import List, Optional

from roam_index.exceptions import ScanCancelledError
from roam_index.models.schema import NoteRecord, ScanStats, utc_now
from roam_index.observability import timed_operation
from roam_index.services.caches import DerivedCaches
from roam_index.storage.extractor import LinkExtractor
from roam_index.storage.files import ContentReader, FileDiscoverer
from roam_index.storage.graph_store import GraphStore
from roam_index.utils import PathLike, content_hash

logger = logging.getLogger(__name__)


class IndexBuilder:
    """Runs full incremental scans against a graph store.

    Args:
        store: Graph store to update.
        discoverer: Enumerates candidate note files.
        reader: Reads note bytes (and decrypts encrypted notes).
        extractor: Extracts links, titles and refs.
        caches: Rebuilt after every committed scan, when given.
    """

    def __init__(
        self,
        store: GraphStore,
        discoverer: FileDiscoverer,
        reader: ContentReader,
        extractor: LinkExtractor,
        caches: Optional[DerivedCaches] = None,
    ) -> None:
        self.store = store
        self.discoverer = discoverer
        self.reader = reader
        self.extractor = extractor
        self.caches = caches

    def stage_record(self, path: Path, data: bytes, digest: str) -> NoteRecord:
        """Extract one note into a full replacement record."""
        try:
            plaintext = self.reader.plaintext(path, data)
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot decrypt {path}, indexing by hash only: {e}")
            plaintext = None
        extracted = self.extractor.extract_file(path, plaintext)
        return NoteRecord(
            path=str(path),
            hash=digest,
            scanned_at=utc_now(),
            titles=extracted.titles,
            ref=extracted.ref,
            links=extracted.links,
        )

    @staticmethod
    def _check_cancelled(
        cancel_event: Optional[threading.Event], root: PathLike, processed: int
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Scan of {root} cancelled after {processed} files")
            raise ScanCancelledError(str(root), processed=processed)

    def build(
        self,
        root: PathLike,
        cancel_event: Optional[threading.Event] = None,
        full: bool = False,
    ) -> ScanStats:
        """Scan ``root`` and bring the store up to date.

        Args:
            root: Note directory to scan.
            cancel_event: When set before the commit, the scan stops with
                ScanCancelledError and the store is left untouched.
            full: Re-extract every note regardless of its stored hash and
                replace the whole store in the commit.

        Returns:
            Counts of updated notes, inserted links, titles, refs and
            deleted notes.

        Raises:
            ConfigurationError: If ``root`` is not a directory.
            ScanCancelledError: If cancelled.
        """
        with timed_operation("build_index", root=root, full=full) as op:
            stats = ScanStats()
            known = self.store.all_notes()
            paths = self.discoverer.discover(root)
            records: List[NoteRecord] = []

            for processed, path in enumerate(paths):
                self._check_cancelled(cancel_event, root, processed)
                key = str(path)
                previous = known.pop(key, None)
                try:
                    data = self.reader.read(path)
                except OSError as e:
                    # Left as stored; a later scan picks it up again
                    logger.warning(f"Cannot read {path}, skipping: {e}")
                    stats.failed += 1
                    continue

                digest = content_hash(data)
                if not full and previous == digest:
                    stats.skipped += 1
                    continue

                record = self.stage_record(path, data, digest)
                records.append(record)
                stats.files += 1
                if record.titles:
                    stats.titles += 1
                if record.ref is not None:
                    stats.refs += 1

            self._check_cancelled(cancel_event, root, len(paths))
            deletions = sorted(known)
            if records or deletions or full:
                stats.links, stats.deleted = self.store.apply_scan(
                    records, deletions, reset=full
                )

            if self.caches is not None:
                self.caches.rebuild(self.store)

            op.update(stats.to_dict())
            logger.info(f"Scan of {root} complete ({stats})")
            return stats
