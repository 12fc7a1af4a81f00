"""Note file discovery and content reading.

A file is a note when its final extension is a configured note extension,
or when its final extension is the encrypted suffix and the extension
directly before it is a note extension (``idea.org.gpg``).
"""
import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from roam_index.exceptions import ConfigurationError
from roam_index.utils import PathLike

logger = logging.getLogger(__name__)

Decryptor = Callable[[bytes], bytes]


def _is_editor_artifact(name: str) -> bool:
    """Lock files, auto-saves and backups written next to notes by editors."""
    return (
        name.startswith(".#")
        or (name.startswith("#") and name.endswith("#"))
        or name.endswith("~")
    )


class FileDiscoverer:
    """Enumerates note files under a root directory.

    Args:
        extensions: Note extensions, without the leading dot.
        encrypted_extension: Suffix that may wrap a note extension.
        ignore_patterns: fnmatch patterns; directories whose name matches
            one of them are not descended into.
        exclude_regexp: Optional regexp; files whose root-relative path
            matches are not notes.
        root: Root directory used to evaluate ``exclude_regexp``.
    """

    def __init__(
        self,
        extensions: Sequence[str],
        encrypted_extension: str = "gpg",
        ignore_patterns: Sequence[str] = (),
        exclude_regexp: Optional[str] = None,
        root: Optional[PathLike] = None,
    ) -> None:
        self.extensions = tuple(extensions)
        self.encrypted_extension = encrypted_extension
        self.ignore_patterns = tuple(ignore_patterns)
        self.exclude_re = re.compile(exclude_regexp) if exclude_regexp else None
        self.root = Path(root).expanduser().resolve() if root is not None else None

    @classmethod
    def from_config(cls, cfg) -> "FileDiscoverer":
        """Build a discoverer from a RoamConfig."""
        return cls(
            extensions=cfg.file_extensions,
            encrypted_extension=cfg.encrypted_extension,
            ignore_patterns=cfg.ignore_patterns,
            exclude_regexp=cfg.file_exclude_regexp,
            root=cfg.get_root(),
        )

    def note_extension(self, path: PathLike) -> Optional[str]:
        """Return the note extension of ``path``, looking through an encrypted suffix.

        Returns None when the path is not a note path.
        """
        name = Path(path).name
        if not name or _is_editor_artifact(name):
            return None
        stem, _, ext = name.rpartition(".")
        if not stem:
            return None
        if ext == self.encrypted_extension:
            stem, _, ext = stem.rpartition(".")
            if not stem:
                return None
        return ext if ext in self.extensions else None

    def is_encrypted(self, path: PathLike) -> bool:
        return str(path).endswith("." + self.encrypted_extension)

    def is_note_path(self, path: PathLike) -> bool:
        """Whether ``path`` qualifies as a note (the file need not exist)."""
        if self.note_extension(path) is None:
            return False
        if self.exclude_re is not None:
            candidate = Path(path).expanduser().resolve()
            if self.root is not None:
                try:
                    candidate = candidate.relative_to(self.root)
                except ValueError:
                    pass
            if self.exclude_re.search(candidate.as_posix()):
                return False
        return True

    def _ignored_dir(self, name: str) -> bool:
        if name in (".", ".."):
            return True
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.ignore_patterns)

    def discover(self, root: PathLike) -> List[Path]:
        """Return every readable note under ``root``, resolved and sorted.

        Raises:
            ConfigurationError: If ``root`` is not a directory.
        """
        root_path = Path(root).expanduser()
        if not root_path.is_dir():
            raise ConfigurationError(
                f"Note directory does not exist: {root_path}", config_key="directory"
            )

        found = set()
        for dirpath, dirnames, filenames in os.walk(root_path, followlinks=True):
            # Prune in place so os.walk skips ignored subtrees
            dirnames[:] = sorted(d for d in dirnames if not self._ignored_dir(d))
            for filename in filenames:
                path = Path(dirpath) / filename
                if not self.is_note_path(path):
                    continue
                try:
                    resolved = path.resolve(strict=True)
                except (OSError, RuntimeError) as e:
                    logger.debug(f"Skipping unresolvable path {path}: {e}")
                    continue
                if not resolved.is_file() or not os.access(resolved, os.R_OK):
                    logger.debug(f"Skipping unreadable file {resolved}")
                    continue
                found.add(resolved)

        return sorted(found)


class ContentReader:
    """Reads raw note bytes and the plaintext used for extraction.

    Args:
        discoverer: Used to recognise encrypted notes.
        decryptor: Turns encrypted bytes into plaintext. Without one,
            encrypted notes are indexed by hash only.
    """

    def __init__(
        self,
        discoverer: FileDiscoverer,
        decryptor: Optional[Decryptor] = None,
    ) -> None:
        self.discoverer = discoverer
        self.decryptor = decryptor

    def read(self, path: PathLike) -> bytes:
        """Return the raw on-disk bytes (what the content hash is taken over)."""
        with open(path, "rb") as f:
            return f.read()

    def plaintext(self, path: PathLike, data: bytes) -> Optional[bytes]:
        """Return the bytes to parse, or None when they cannot be obtained."""
        if not self.discoverer.is_encrypted(path):
            return data
        if self.decryptor is None:
            logger.debug(f"No decryptor configured, indexing {path} by hash only")
            return None
        return self.decryptor(data)
