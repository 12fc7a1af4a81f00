"""Data models for roam-index."""

import datetime
from dataclasses import asdict, dataclass, field
from datetime import timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


class Link(BaseModel):
    """A directed, context-bearing edge from one note to another.

    ``source`` and ``target`` are canonical paths. ``target`` need not be
    an indexed note (links may point at notes not created yet).
    """

    source: str = Field(..., description="Canonical path of the linking note")
    target: str = Field(..., description="Canonical path of the linked note")
    excerpt: str = Field(default="", description="Enclosing block text, trimmed")
    offset: int = Field(default=0, ge=0, description="Character offset of the link")

    model_config = {
        "extra": "forbid",
        "frozen": True,  # Links are never updated in place
    }


class Ref(BaseModel):
    """An external reference key attached to at most one note."""

    key: str = Field(..., description="Reference key, e.g. a URL or citekey")
    ref_type: str = Field(default="ref", description="Kind of key (website, cite, ...)")

    model_config = {"frozen": True}

    @field_validator("key")
    @classmethod
    def _key_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Reference key cannot be blank")
        return value


class NoteRecord(BaseModel):
    """Everything the store holds for one note, staged as a single replacement."""

    path: str
    hash: str
    scanned_at: datetime.datetime = Field(default_factory=utc_now)
    titles: List[str] = Field(default_factory=list)
    ref: Optional[Ref] = None
    links: List[Link] = Field(default_factory=list)


class Backlink(BaseModel):
    """A link seen from its target: who links here, and with what context."""

    source: str
    excerpt: str
    offset: int

    model_config = {"frozen": True}


@dataclass
class ScanStats:
    """Counts reported by a full incremental scan.

    Attributes:
        files: Notes whose content changed (or were new) and were re-extracted.
        links: Link rows inserted for those notes.
        titles: Notes whose title rows were written.
        refs: Reference keys written.
        deleted: Notes removed because their file vanished.
        skipped: Notes whose hash was unchanged.
        failed: Files that could not be read and were left untouched.
    """

    files: int = 0
    links: int = 0
    titles: int = 0
    refs: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def changed(self) -> bool:
        """Whether the scan modified the store at all."""
        return bool(self.files or self.deleted)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    def __str__(self) -> str:
        return (
            f"files: {self.files}, links: {self.links}, titles: {self.titles}, "
            f"refs: {self.refs}, deleted: {self.deleted}"
        )


@dataclass
class RenameResult:
    """Outcome of a rename hook.

    Attributes:
        rewritten_files: Canonical paths of files whose text was rewritten.
        links_rewritten: Number of individual links whose target changed.
    """

    rewritten_files: List[str] = field(default_factory=list)
    links_rewritten: int = 0
