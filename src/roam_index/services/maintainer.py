"""Single-file consistency hooks: save, delete and rename.

The host calls these hooks directly from its own file-lifecycle
operations. Each hook touches only the notes involved and finishes all of
its store writes (and, for renames, all file rewrites) before returning.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from roam_index.exceptions import RenameCollisionError
from roam_index.models.schema import RenameResult
from roam_index.observability import timed_operation, traced
from roam_index.services.caches import DerivedCaches
from roam_index.services.index_builder import IndexBuilder
from roam_index.storage.parsers import ParsedLink, parser_for
from roam_index.utils import (PathLike, canonical_path, content_hash,
                              relative_link_target)

logger = logging.getLogger(__name__)

# Maps the old resolved target of a link to its new target (None: keep)
Retarget = Callable[[str], Optional[str]]


def _write_atomically(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` through a temp file in the same directory."""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".roam-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ConsistencyMaintainer:
    """Keeps the store (and link text on disk) correct for single-file events.

    Args:
        builder: Supplies the store, reader, extractor and discoverer, and
            stages single-note replacements the same way a full scan does.
        caches: Patched after every change, when given.
        slugify: Display label of a note without titles.
    """

    def __init__(
        self,
        builder: IndexBuilder,
        caches: Optional[DerivedCaches] = None,
        slugify: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.builder = builder
        self.store = builder.store
        self.discoverer = builder.discoverer
        self.reader = builder.reader
        self.extractor = builder.extractor
        self.caches = caches
        self.slugify = slugify or builder.store.slugify

    # ------------------------------------------------------------------
    # Save / delete
    # ------------------------------------------------------------------

    @traced("on_save")
    def on_save(self, path: PathLike) -> bool:
        """Re-index one note after it was written.

        Returns:
            True if the store changed.
        """
        if not self.discoverer.is_note_path(path):
            return False
        return self._update_file(canonical_path(path))

    @traced("on_delete")
    def on_delete(self, path: PathLike) -> bool:
        """Drop one note after its file was deleted.

        Returns:
            True if the note was indexed.
        """
        if not self.discoverer.is_note_path(path):
            return False
        return self._delete(canonical_path(path))

    def _delete(self, key: str) -> bool:
        existed = self.store.delete_note(key)
        if self.caches is not None:
            self.caches.drop(key)
        if existed:
            logger.debug(f"Removed {key} from the index")
        return existed

    def _update_file(self, key: str, force: bool = False) -> bool:
        try:
            data = self.reader.read(key)
        except FileNotFoundError:
            logger.debug(f"{key} no longer exists, removing it from the index")
            return self._delete(key)
        except OSError as e:
            logger.warning(f"Cannot read {key}, leaving its index entry as is: {e}")
            return False

        digest = content_hash(data)
        if not force and self.store.hash_of(key) == digest:
            return False

        record = self.builder.stage_record(Path(key), data, digest)
        self.store.replace_note(record)
        if self.caches is not None:
            self.caches.refresh(self.store, [key])
        logger.debug(f"Re-indexed {key} ({len(record.links)} links)")
        return True

    # ------------------------------------------------------------------
    # Rename
    # ------------------------------------------------------------------

    def title_or_slug(self, key: str) -> str:
        titles = self.store.titles_of(key)
        return titles[0] if titles else self.slugify(key)

    def _title_or_slug_on_disk(self, key: str) -> str:
        try:
            data = self.reader.plaintext(key, self.reader.read(key))
        except (OSError, ValueError) as e:
            logger.debug(f"Cannot read titles of {key}: {e}")
            data = None
        titles = self.extractor.extract_file(key, data).titles
        return titles[0] if titles else self.slugify(key)

    def on_rename(self, old_path: PathLike, new_path: PathLike) -> RenameResult:
        """Carry a note's links and index entry over to its new path.

        Call after the file was moved on disk. Every note linking to the old
        path has those links rewritten to the new path. Labels equal to the
        note's old title (or slug) follow the new one; custom labels are
        kept. A note moved to another directory has its own relative links
        fixed. A rename to a path that is not a note path is ignored.

        Raises:
            RenameCollisionError: If ``new_path`` is already indexed. Nothing
                is changed in that case.
        """
        if not self.discoverer.is_note_path(new_path):
            logger.debug(f"Rename target {new_path} is not a note, ignoring")
            return RenameResult()

        old_key = canonical_path(old_path)
        new_key = canonical_path(new_path)
        if old_key == new_key:
            self._update_file(new_key)
            return RenameResult()
        if self.store.is_indexed(new_key):
            raise RenameCollisionError(old_key, new_key)

        with timed_operation("on_rename", old=old_key, new=new_key) as op:
            result = RenameResult()
            old_label = self.title_or_slug(old_key)
            new_label = self._title_or_slug_on_disk(new_key)
            sources = sorted({b.source for b in self.store.backlinks_to(old_key)})
            moved_dir = Path(old_key).parent != Path(new_key).parent

            def to_new(target: str) -> Optional[str]:
                return new_key if target == old_key else None

            def in_moved_note(target: str) -> Optional[str]:
                if target == old_key:
                    return new_key
                return target if moved_dir else None

            for source in sources:
                if source == old_key:
                    continue
                count = self._rewrite_links(
                    Path(source), Path(source).parent, to_new, old_label, new_label
                )
                if count:
                    result.rewritten_files.append(source)
                    result.links_rewritten += count

            if old_key in sources or moved_dir:
                count = self._rewrite_links(
                    Path(new_key), Path(old_key).parent, in_moved_note,
                    old_label, new_label,
                )
                if count:
                    result.rewritten_files.append(new_key)
                    result.links_rewritten += count

            for source in sources:
                if source != old_key:
                    self._update_file(source, force=True)
            self._delete(old_key)
            self._update_file(new_key, force=True)

            op["links_rewritten"] = result.links_rewritten
            logger.info(
                f"Renamed {old_key} -> {new_key}: {result.links_rewritten} links "
                f"rewritten in {len(result.rewritten_files)} files"
            )
            return result

    def _rewrite_links(
        self,
        file_path: Path,
        base_dir: Path,
        retarget: Retarget,
        old_label: str,
        new_label: str,
    ) -> int:
        """Rewrite the file links of one note in place.

        Args:
            file_path: The note to rewrite (its current location).
            base_dir: Directory its relative links were written against.
            retarget: New absolute target for a resolved old target, or None
                to leave the link alone.
            old_label: Label that follows the renamed note's title.
            new_label: The renamed note's new title or slug.

        Returns:
            Number of links rewritten.
        """
        if self.discoverer.is_encrypted(file_path):
            logger.warning(f"Not rewriting links in encrypted note {file_path}")
            return 0
        try:
            raw = self.reader.read(file_path)
        except OSError as e:
            logger.warning(f"Cannot rewrite links in {file_path}: {e}")
            return 0

        text = raw.decode("utf-8", errors="surrogateescape")
        extension = self.discoverer.note_extension(file_path)
        parser = parser_for(extension)
        document = parser.parse(text)

        edits: List[Tuple[int, int, str]] = []
        for link in document.links:
            old_target = self.extractor.resolve_target(base_dir, link)
            if old_target is None:
                continue
            new_target = retarget(old_target)
            if new_target is None:
                continue
            written = self._link_target_text(link, new_target, file_path.parent)
            if written is None:
                continue
            label = link.label
            if new_target != old_target and label == old_label:
                label = new_label
            replacement = parser.format_link(written, label, link.search)
            if replacement != text[link.begin:link.end]:
                edits.append((link.begin, link.end, replacement))

        if not edits:
            return 0
        for begin, end, replacement in sorted(edits, reverse=True):
            text = text[:begin] + replacement + text[end:]
        _write_atomically(file_path, text.encode("utf-8", errors="surrogateescape"))
        logger.debug(f"Rewrote {len(edits)} links in {file_path}")
        return len(edits)

    @staticmethod
    def _link_target_text(
        link: ParsedLink, new_target: str, file_dir: Path
    ) -> Optional[str]:
        """How ``new_target`` is written in a link living in ``file_dir``.

        Absolute targets stay absolute, and ``~`` targets keep the home
        prefix when the new target is still under the home directory.
        Returns None when an absolute link needs no change.
        """
        original = link.target.strip()
        if original.startswith("~") or os.path.isabs(original):
            if canonical_path(original) == new_target:
                return None
            if original.startswith("~"):
                home = canonical_path("~")
                if new_target.startswith(home + os.sep):
                    return "~/" + Path(os.path.relpath(new_target, home)).as_posix()
            return new_target
        return relative_link_target(new_target, file_dir)
