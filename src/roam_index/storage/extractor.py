"""Link and metadata extraction for a single note.

Turns one parsed note into the rows the graph store keeps for it: the
outbound links to other notes (with context), the title list and the
optional reference key. Extraction never touches the source file.
"""
import logging
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from roam_index.models.schema import Link, Ref
from roam_index.storage.files import FileDiscoverer
from roam_index.storage.parsers import ParsedDocument, ParsedLink, parser_for
from roam_index.utils import PathLike, canonical_path

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_TYPED_KEY_RE = re.compile(r"^([A-Za-z][A-Za-z0-9_-]*):(.+)$")


@dataclass
class ExtractedNote:
    """What one note contributes to the graph."""

    titles: List[str] = field(default_factory=list)
    ref: Optional[Ref] = None
    links: List[Link] = field(default_factory=list)


def parse_ref(value: Optional[str]) -> Optional[Ref]:
    """Parse a reference key property into a :class:`Ref`.

    Examples:
        "https://example.com" -> Ref(key="https://example.com", ref_type="website")
        "cite:doe2020" -> Ref(key="doe2020", ref_type="cite")
        "ISBN 123" -> Ref(key="ISBN 123", ref_type="ref")
    """
    if value is None or not value.strip():
        return None
    value = value.strip()
    if _URL_RE.match(value):
        return Ref(key=value, ref_type="website")
    m = _TYPED_KEY_RE.match(value)
    if m and not m.group(2).startswith("//"):
        return Ref(key=m.group(2).strip(), ref_type=m.group(1).lower())
    return Ref(key=value, ref_type="ref")


def tokenize_aliases(lines: List[str]) -> List[str]:
    """Split alias property lines into aliases, shell-style.

    Each line may hold several aliases; quoting keeps multi-word aliases
    together. A line that cannot be tokenized (unbalanced quotes) is
    dropped and logged.
    """
    aliases: List[str] = []
    for line in lines:
        try:
            aliases.extend(token for token in shlex.split(line) if token.strip())
        except ValueError as e:
            logger.warning(f"Ignoring malformed alias line {line!r}: {e}")
    return aliases


class LinkExtractor:
    """Extracts links, titles and the reference key of notes.

    Args:
        discoverer: Decides which link targets are notes.
        title_property: Header property holding the canonical title.
        alias_property: Header property holding alias lines.
        key_property: Header property holding the reference key.
    """

    def __init__(
        self,
        discoverer: FileDiscoverer,
        title_property: str = "title",
        alias_property: str = "roam_alias",
        key_property: str = "roam_key",
    ) -> None:
        self.discoverer = discoverer
        self.title_property = title_property
        self.alias_property = alias_property
        self.key_property = key_property

    @classmethod
    def from_config(cls, cfg, discoverer: FileDiscoverer) -> "LinkExtractor":
        return cls(
            discoverer,
            title_property=cfg.title_property,
            alias_property=cfg.alias_property,
            key_property=cfg.key_property,
        )

    def parse(self, path: PathLike, text: str) -> ParsedDocument:
        """Parse ``text`` with the parser matching the note's extension."""
        return parser_for(self.discoverer.note_extension(path)).parse(text)

    def extract_file(self, path: PathLike, content: Optional[bytes]) -> ExtractedNote:
        """Extract from raw bytes; None (undecryptable content) yields nothing."""
        if content is None:
            return ExtractedNote()
        text = content.decode("utf-8", errors="replace")
        return self.extract(path, self.parse(path, text))

    def extract(self, path: PathLike, document: ParsedDocument) -> ExtractedNote:
        source = canonical_path(path)
        return ExtractedNote(
            titles=self.extract_titles(document),
            ref=parse_ref(document.first(self.key_property)),
            links=self.extract_links(source, document),
        )

    def extract_titles(self, document: ParsedDocument) -> List[str]:
        titles: List[str] = []
        title = document.first(self.title_property)
        if title and title.strip():
            titles.append(title.strip())
        titles.extend(tokenize_aliases(document.values(self.alias_property)))
        # de-duplicate, keeping the first occurrence
        return list(dict.fromkeys(titles))

    def resolve_target(self, base_dir: PathLike, link: ParsedLink) -> Optional[str]:
        """Canonical path a file link points at, or None if it is not a note.

        Relative targets are resolved against ``base_dir``, normally the
        directory of the note containing the link.
        """
        if link.link_type != "file" or not link.target.strip():
            return None
        target = Path(os.path.expanduser(link.target.strip()))
        if not target.is_absolute():
            target = Path(base_dir) / target
        if not self.discoverer.is_note_path(target):
            return None
        return canonical_path(target)

    def extract_links(self, source: str, document: ParsedDocument) -> List[Link]:
        links: List[Link] = []
        base_dir = Path(source).parent
        for parsed in document.links:
            target = self.resolve_target(base_dir, parsed)
            if target is None:
                continue
            links.append(
                Link(
                    source=source,
                    target=target,
                    excerpt=parsed.excerpt,
                    offset=parsed.begin,
                )
            )
        return links
