"""Utility functions for roam-index."""
import hashlib
import os
from pathlib import Path
from typing import Iterable, Optional, Union

PathLike = Union[str, "os.PathLike[str]"]


def content_hash(data: bytes) -> str:
    """Return a stable SHA-1 hex digest of raw file bytes.

    Used only to detect content changes between scans; two runs over the
    same bytes always produce the same digest.
    """
    return hashlib.sha1(data).hexdigest()


def canonical_path(path: PathLike) -> str:
    """Return the absolute, symlink-resolved form of ``path`` as a string.

    This string is the identity of a note everywhere in the store.
    """
    return str(Path(path).expanduser().resolve())


def strip_note_extensions(
    path: PathLike, encrypted_extension: str, note_extensions: Iterable[str]
) -> str:
    """Drop the note extension (and an encrypted suffix wrapping it) from a path.

    Examples:
        "a/b.org" -> "a/b"
        "a/b.org.gpg" -> "a/b"
        "a/b.txt" -> "a/b.txt"
    """
    text = str(path)
    suffix = "." + encrypted_extension
    if text.endswith(suffix):
        text = text[: -len(suffix)]
    for ext in note_extensions:
        if text.endswith("." + ext):
            return text[: -len(ext) - 1]
    return text


def path_to_slug(
    path: PathLike,
    root: Optional[PathLike],
    encrypted_extension: str = "gpg",
    note_extensions: Iterable[str] = ("org", "md"),
) -> str:
    """Derive a display slug for a note that has no title.

    The slug is the note's path relative to ``root`` without its note
    extension, using forward slashes. Notes outside ``root`` fall back to
    their bare file name.

    Examples:
        ("/notes/nested/f1.org", "/notes") -> "nested/f1"
        ("/elsewhere/x.md", "/notes") -> "x"
    """
    candidate = Path(path)
    try:
        candidate = candidate.relative_to(Path(root)) if root is not None else Path(candidate.name)
    except ValueError:
        candidate = Path(candidate.name)
    return strip_note_extensions(
        candidate.as_posix(), encrypted_extension, note_extensions
    )


def relative_link_target(target: PathLike, source_dir: PathLike) -> str:
    """Express ``target`` relative to ``source_dir`` the way links are written.

    Always uses forward slashes; targets in the same directory get no
    ``./`` prefix.
    """
    rel = os.path.relpath(str(target), str(source_dir))
    return Path(rel).as_posix()
