"""Derived in-memory lookup caches over the graph store.

Three projections keyed by canonical path:

- forward: path -> distinct link targets, in document order
- backward: path -> set of notes linking to it
- titles: path -> title list (first canonical, the rest aliases)

``rebuild`` recomputes all three from the store after a full scan and
swaps them in at once. Single-file hooks call ``refresh``/``drop`` to patch
just the affected notes, so the caches track the store between scans.
"""
import logging
import threading
from typing import Dict, Iterable, List, Set, Tuple

from roam_index.storage.graph_store import GraphStore

logger = logging.getLogger(__name__)


class DerivedCaches:
    """Read-optimised projections of a :class:`GraphStore`."""

    def __init__(self) -> None:
        self.forward: Dict[str, List[str]] = {}
        self.backward: Dict[str, Set[str]] = {}
        self.titles: Dict[str, List[str]] = {}
        self._lock = threading.RLock()

    def rebuild(self, store: GraphStore) -> None:
        """Recompute every projection from ``store``."""
        forward: Dict[str, List[str]] = {}
        backward: Dict[str, Set[str]] = {}
        for link in store.all_links():
            targets = forward.setdefault(link.source, [])
            if link.target not in targets:
                targets.append(link.target)
            backward.setdefault(link.target, set()).add(link.source)
        titles = store.all_titles()

        with self._lock:
            self.forward, self.backward, self.titles = forward, backward, titles
        logger.debug(
            f"Caches rebuilt: {len(titles)} notes, {len(forward)} linking notes"
        )

    def _unlink_source(self, path: str) -> None:
        for target in self.forward.pop(path, []):
            sources = self.backward.get(target)
            if sources is None:
                continue
            sources.discard(path)
            if not sources:
                del self.backward[target]

    def refresh(self, store: GraphStore, paths: Iterable[str]) -> None:
        """Re-read the given notes from ``store`` and patch the projections.

        Paths that are no longer indexed are dropped.
        """
        with self._lock:
            for path in paths:
                self._unlink_source(path)
                if not store.is_indexed(path):
                    self.titles.pop(path, None)
                    continue
                targets: List[str] = []
                for link in store.forward_links_of(path):
                    if link.target not in targets:
                        targets.append(link.target)
                if targets:
                    self.forward[path] = targets
                for target in targets:
                    self.backward.setdefault(target, set()).add(path)
                self.titles[path] = store.titles_of(path)

    def drop(self, path: str) -> None:
        """Forget a deleted note as a source and as a titled note.

        Links from other notes to ``path`` stay, since those notes still
        contain them.
        """
        with self._lock:
            self._unlink_source(path)
            self.titles.pop(path, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def forward_links(self, path: str) -> List[str]:
        with self._lock:
            return list(self.forward.get(path, []))

    def backlink_sources(self, path: str) -> Set[str]:
        with self._lock:
            return set(self.backward.get(path, set()))

    def titles_of(self, path: str) -> List[str]:
        with self._lock:
            return list(self.titles.get(path, []))

    def has_note(self, path: str) -> bool:
        with self._lock:
            return path in self.titles

    def completions(self, slugify) -> List[Tuple[str, str]]:
        """``(label, path)`` per title or alias; untitled notes use their slug."""
        with self._lock:
            items = sorted(self.titles.items())
        result: List[Tuple[str, str]] = []
        for path, titles in items:
            if titles:
                result.extend((title, path) for title in titles)
            else:
                result.append((slugify(path), path))
        return result
