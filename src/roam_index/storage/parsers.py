"""Structural parsers for Org-mode and Markdown notes.

A parser turns note text into a :class:`ParsedDocument` in a single pass:
the header-style key/value properties of the note and every inline link,
each with its character span and the trimmed text of the block that
encloses it. Parsers also know how to write a link back in their own
syntax, which the rename hook needs to rewrite link targets in place.
"""
import bisect
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote

import frontmatter
import yaml

logger = logging.getLogger(__name__)

# A URL-ish scheme prefix such as "file:", "https:" or "cite:"
_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*):(.*)$", re.DOTALL)


@dataclass
class ParsedLink:
    """One inline link as it appears in the text.

    Attributes:
        link_type: ``file`` for links to files, otherwise the scheme
            (``https``, ``cite``, ...) or ``fuzzy`` for untyped Org links.
        target: The link target without scheme or search option.
        label: The author-supplied description, if any.
        begin: Offset of the first character of the link.
        end: Offset one past the last character of the link.
        excerpt: Trimmed text of the nearest enclosing block.
        search: Search option kept verbatim when the link is rewritten
            (``::*Heading`` in Org, ``#anchor`` in Markdown).
    """

    link_type: str
    target: str
    label: Optional[str]
    begin: int
    end: int
    excerpt: str = ""
    search: str = ""


@dataclass
class ParsedDocument:
    """Properties and links of one note."""

    properties: Dict[str, List[str]] = field(default_factory=dict)
    links: List[ParsedLink] = field(default_factory=list)

    def values(self, key: str) -> List[str]:
        """All values of ``key`` (case-insensitive), in document order."""
        return self.properties.get(key.lower(), [])

    def first(self, key: str) -> Optional[str]:
        values = self.values(key)
        return values[0] if values else None


class _BlockIndex:
    """Start/end offsets of the text blocks of a document.

    Blocks are runs of non-blank lines. Headings and keyword lines are
    blocks of their own and list items start a new block. Used to find
    the enclosing block of a link with a binary search.
    """

    def __init__(self, spans: List[Tuple[int, int]]) -> None:
        self._spans = spans
        self._starts = [start for start, _ in spans]

    def enclosing(self, offset: int) -> Optional[Tuple[int, int]]:
        i = bisect.bisect_right(self._starts, offset) - 1
        if i < 0:
            return None
        start, end = self._spans[i]
        return (start, end) if start <= offset < end else None


def _build_blocks(
    text: str,
    start: int,
    standalone_re: "re.Pattern[str]",
    item_re: "re.Pattern[str]",
) -> _BlockIndex:
    spans: List[Tuple[int, int]] = []
    block_start: Optional[int] = None
    block_end = start
    pos = start
    for line in text[start:].splitlines(keepends=True):
        line_start, pos = pos, pos + len(line)
        content_end = line_start + len(line.rstrip("\r\n"))
        if not line.strip():
            if block_start is not None:
                spans.append((block_start, block_end))
                block_start = None
            continue
        if standalone_re.match(line):
            if block_start is not None:
                spans.append((block_start, block_end))
            spans.append((line_start, content_end))
            block_start = None
            continue
        if item_re.match(line) and block_start is not None:
            spans.append((block_start, block_end))
            block_start = None
        if block_start is None:
            block_start = line_start
        block_end = content_end
    if block_start is not None:
        spans.append((block_start, block_end))
    return _BlockIndex(spans)


def _masked_ranges(text: str, pattern: "re.Pattern[str]") -> List[Tuple[int, int]]:
    return [(m.start(), m.end()) for m in pattern.finditer(text)]


def _inside(ranges: List[Tuple[int, int]], offset: int) -> bool:
    return any(start <= offset < end for start, end in ranges)


class OrgParser:
    """Parser for Org-mode notes.

    Properties are ``#+KEY: value`` keyword lines; repeated keys keep every
    value. Links are bracket links, ``[[file:path][label]]`` or
    ``[[file:path]]``. Links inside ``#+begin_...``/``#+end_...`` blocks
    are not links.
    """

    name = "org"

    _KEYWORD_RE = re.compile(r"^[ \t]*#\+([A-Za-z0-9_-]+):[ \t]*(.*?)[ \t]*$", re.MULTILINE)
    _LINK_RE = re.compile(r"\[\[((?:[^\]\[\\]|\\.)+)\](?:\[((?:[^\]\[]|\[[^\]]*\])*)\])?\]")
    _BLOCK_RE = re.compile(
        r"^[ \t]*#\+begin_(\w+).*?^[ \t]*#\+end_\1[^\n]*$",
        re.MULTILINE | re.DOTALL | re.IGNORECASE,
    )
    _STANDALONE_RE = re.compile(r"^(\*+\s|[ \t]*#\+)")
    _ITEM_RE = re.compile(r"^[ \t]*([-+]|\d+[.)])\s")

    def parse(self, text: str) -> ParsedDocument:
        doc = ParsedDocument()
        for m in self._KEYWORD_RE.finditer(text):
            key = m.group(1).lower()
            if key.startswith(("begin_", "end_")):
                continue
            doc.properties.setdefault(key, []).append(m.group(2))

        masked = _masked_ranges(text, self._BLOCK_RE)
        blocks = _build_blocks(text, 0, self._STANDALONE_RE, self._ITEM_RE)
        for m in self._LINK_RE.finditer(text):
            if _inside(masked, m.start()):
                continue
            link_type, target, search = self._split_target(m.group(1))
            span = blocks.enclosing(m.start())
            excerpt = text[span[0]:span[1]].strip() if span else ""
            doc.links.append(
                ParsedLink(
                    link_type=link_type,
                    target=target,
                    label=m.group(2),
                    begin=m.start(),
                    end=m.end(),
                    excerpt=excerpt,
                    search=search,
                )
            )
        return doc

    @staticmethod
    def _split_target(raw: str) -> Tuple[str, str, str]:
        raw = raw.replace("\\]", "]").replace("\\[", "[").strip()
        if raw.startswith(("/", "./", "../", "~")):
            link_type, target = "file", raw
        else:
            m = _SCHEME_RE.match(raw)
            if not m:
                return "fuzzy", raw, ""
            link_type, target = m.group(1).lower(), m.group(2)
        search = ""
        if link_type == "file" and "::" in target:
            target, sep, rest = target.partition("::")
            search = sep + rest
        return link_type, target, search

    def format_link(self, target: str, label: Optional[str], search: str = "") -> str:
        if label:
            return f"[[file:{target}{search}][{label}]]"
        return f"[[file:{target}{search}]]"


class MarkdownParser:
    """Parser for Markdown notes with optional YAML frontmatter.

    Properties come from the frontmatter (keys lower-cased). Scalar values
    are split into lines. List items are single values, so they are
    shell-quoted: alias tokenization then keeps each item whole.
    Links are inline ``[label](target)`` links, images excluded. Links in
    fenced code blocks are not links.
    """

    name = "md"

    _FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
    _LINK_RE = re.compile(r"(?<!!)\[([^\]\n]*)\]\((?:<([^>\n]+)>|([^)\s]+))\)")
    _FENCE_RE = re.compile(r"^[ \t]*(```|~~~).*?^[ \t]*\1[^\n]*$", re.MULTILINE | re.DOTALL)
    _STANDALONE_RE = re.compile(r"^#{1,6}\s")
    _ITEM_RE = re.compile(r"^[ \t]*([-+*]|\d+[.)])\s")

    def parse(self, text: str) -> ParsedDocument:
        doc = ParsedDocument()
        body_start = 0
        match = self._FRONTMATTER_RE.match(text)
        if match:
            body_start = match.end()
            doc.properties = self._parse_properties(text)

        masked = _masked_ranges(text, self._FENCE_RE)
        blocks = _build_blocks(text, body_start, self._STANDALONE_RE, self._ITEM_RE)
        for m in self._LINK_RE.finditer(text, body_start):
            if _inside(masked, m.start()):
                continue
            link_type, target, search = self._split_target(m.group(2) or unquote(m.group(3)))
            span = blocks.enclosing(m.start())
            excerpt = text[span[0]:span[1]].strip() if span else ""
            doc.links.append(
                ParsedLink(
                    link_type=link_type,
                    target=target,
                    label=m.group(1),
                    begin=m.start(),
                    end=m.end(),
                    excerpt=excerpt,
                    search=search,
                )
            )
        return doc

    @staticmethod
    def _parse_properties(text: str) -> Dict[str, List[str]]:
        try:
            metadata = frontmatter.loads(text).metadata
        except (yaml.YAMLError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed frontmatter: {e}")
            return {}
        properties: Dict[str, List[str]] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                lines = [shlex.quote(str(item)) for item in value if item is not None]
            else:
                lines = [line for line in str(value).splitlines() if line.strip()]
            if lines:
                properties[str(key).lower()] = lines
        return properties

    @staticmethod
    def _split_target(raw: str) -> Tuple[str, str, str]:
        m = _SCHEME_RE.match(raw)
        # Single letters are Windows drive letters, not schemes
        if m and len(m.group(1)) > 1 and m.group(1).lower() != "file":
            return m.group(1).lower(), m.group(2), ""
        target = m.group(2) if m and m.group(1).lower() == "file" else raw
        search = ""
        if "#" in target:
            target, sep, rest = target.partition("#")
            search = sep + rest
        return "file", target, search

    def format_link(self, target: str, label: Optional[str], search: str = "") -> str:
        destination = f"{target}{search}"
        if any(ch.isspace() for ch in destination):
            destination = f"<{destination}>"
        return f"[{label or ''}]({destination})"


_PARSERS = {
    "org": OrgParser(),
    "md": MarkdownParser(),
    "markdown": MarkdownParser(),
}


def parser_for(extension: Optional[str]):
    """Return the parser for a note extension, falling back to Org syntax."""
    return _PARSERS.get((extension or "").lower(), _PARSERS["org"])
