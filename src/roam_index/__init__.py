"""
roam-index - a live, queryable index over a directory of interlinked notes.

This package discovers Org-mode and Markdown notes on disk, extracts their
titles, aliases, reference keys and file links, and keeps a SQLite-backed
link graph (with backlinks) consistent as notes are saved, renamed and deleted.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("roam-index")
except PackageNotFoundError:
    __version__ = "0.3.0"
