"""Data models for the notegraph index."""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from notegraph.utils import make_note_id, utc_now


class ValueType(str, Enum):
    """Kinds a serialized metadata value can have."""
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    ARRAY = "array"


class ExternalLinkType(str, Enum):
    """Kinds of external reference found in note bodies."""
    URL = "url"
    IMAGE = "image"
    EMBED = "embed"


class LinkAggressiveness(str, Enum):
    """How eagerly auto-linking accepts a candidate."""
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"

    @property
    def threshold(self) -> float:
        """Minimum relevance a suggestion needs at this tier."""
        return _AGGRESSIVENESS_THRESHOLDS[self]


_AGGRESSIVENESS_THRESHOLDS = {
    LinkAggressiveness.CONSERVATIVE: 0.8,
    LinkAggressiveness.MODERATE: 0.6,
    LinkAggressiveness.AGGRESSIVE: 0.4,
}


class NoteRecord(BaseModel):
    """A note as held in the index."""

    id: str = Field(default="", description="Stable '<type>/<filename>' identifier")
    title: str = Field(..., description="Title of the note")
    content: Optional[str] = Field(default=None, description="Body text")
    note_type: str = Field(..., description="Note type (first path segment)")
    filename: str = Field(..., description="Filename without directory")
    path: str = Field(default="", description="Storage path of the source file")
    created: datetime.datetime = Field(default_factory=utc_now)
    updated: datetime.datetime = Field(default_factory=utc_now)
    size: int = Field(default=0, description="Byte size of the content")
    content_hash: Optional[str] = Field(default=None)

    model_config = {"extra": "forbid"}

    @field_validator("title", "note_type", "filename")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v

    @model_validator(mode="after")
    def _derive_id(self) -> "NoteRecord":
        expected = make_note_id(self.note_type, self.filename)
        if not self.id:
            self.id = expected
        elif self.id != expected:
            raise ValueError(
                f"Note id {self.id!r} does not match type/filename {expected!r}"
            )
        return self


class MetadataEntry(BaseModel):
    """One serialized key/value metadata row."""

    note_id: str
    key: str
    value: str
    value_type: ValueType

    model_config = {"frozen": True}


class SourceNote(BaseModel):
    """A note supplied by a note source, with its raw metadata."""

    record: NoteRecord
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def content(self) -> Optional[str]:
        return self.record.content


class NoteLookupResult(BaseModel):
    """Lightweight view of a note used for lookups and suggestions."""

    id: str
    title: str
    note_type: str
    filename: str

    model_config = {"frozen": True}


# Parser value objects


@dataclass(frozen=True)
class ParsedWikilink:
    """A ``[[target]]`` or ``[[target|display]]`` occurrence in text.

    ``start``/``end`` are offsets into the text that was parsed.
    """
    raw: str
    target: str
    display: Optional[str]
    start: int
    end: int
    line_number: int = 1

    @property
    def text(self) -> str:
        """What a reader sees: the display text, else the target."""
        return self.display or self.target


@dataclass(frozen=True)
class ExtractedWikilink:
    """An internal reference ready to be stored as an edge."""
    target: str
    link_text: Optional[str]
    line_number: int


@dataclass(frozen=True)
class ExtractedExternalLink:
    """An external reference ready to be stored."""
    url: str
    title: Optional[str]
    line_number: int
    link_type: ExternalLinkType


@dataclass
class LinkExtractionResult:
    """All references parsed out of one note body."""
    wikilinks: List[ExtractedWikilink] = field(default_factory=list)
    external_links: List[ExtractedExternalLink] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.wikilinks) + len(self.external_links)


# Stored link edges


class InternalLink(BaseModel):
    """A stored wikilink edge. ``target_note_id`` is None when broken."""

    id: int
    source_note_id: str
    target_note_id: Optional[str] = None
    target_title: str
    link_text: Optional[str] = None
    line_number: Optional[int] = None
    created: Optional[datetime.datetime] = None
    source_title: Optional[str] = None
    target_note_title: Optional[str] = None

    @property
    def is_broken(self) -> bool:
        return self.target_note_id is None


class ExternalLinkRecord(BaseModel):
    """A stored external link."""

    id: int
    note_id: str
    url: str
    title: Optional[str] = None
    line_number: Optional[int] = None
    link_type: ExternalLinkType = ExternalLinkType.URL
    created: Optional[datetime.datetime] = None


class NoteLinks(BaseModel):
    """Every edge touching a single note."""

    note_id: str
    outgoing: List[InternalLink] = Field(default_factory=list)
    external: List[ExternalLinkRecord] = Field(default_factory=list)
    incoming: List[InternalLink] = Field(default_factory=list)


class LinkSearchCriteria(BaseModel):
    """Link relationship filters.

    Only the first non-empty criterion is applied, in field order.
    """

    links_to: List[str] = Field(default_factory=list)
    linked_from: List[str] = Field(default_factory=list)
    external_domains: List[str] = Field(default_factory=list)
    broken_only: bool = False

    @field_validator("links_to", "linked_from", "external_domains", mode="before")
    @classmethod
    def _coerce_to_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    def is_empty(self) -> bool:
        return not (
            self.links_to or self.linked_from or self.external_domains
            or self.broken_only
        )


# Suggestion engine results


class LinkSuggestion(BaseModel):
    """A candidate note scored against a query."""

    note_id: str
    title: str
    note_type: str
    filename: str
    relevance: float

    @property
    def wikilink(self) -> str:
        return f"[[{self.note_id}|{self.title}]]"


class LinkValidationResult(BaseModel):
    """Wikilinks in a document split by whether they resolve."""

    valid: List[ParsedWikilink] = Field(default_factory=list)
    broken: List[ParsedWikilink] = Field(default_factory=list)
    suggestions: Dict[str, List[LinkSuggestion]] = Field(default_factory=dict)


class LinkOpportunity(BaseModel):
    """Plain text that could become a wikilink."""

    text: str
    start: int
    end: int
    suggestions: List[LinkSuggestion] = Field(default_factory=list)

    @property
    def best(self) -> Optional[LinkSuggestion]:
        return self.suggestions[0] if self.suggestions else None


class AppliedLink(BaseModel):
    """A substitution made by auto-linking."""

    original_text: str
    wikilink: str
    start: int
    note_id: str
    relevance: float


class AutoLinkResult(BaseModel):
    content: str
    applied: List[AppliedLink] = Field(default_factory=list)
    opportunities: List[LinkOpportunity] = Field(default_factory=list)


class LinkReport(BaseModel):
    """Link health summary for a document."""

    total_wikilinks: int
    valid_links: int
    broken_links: int
    linking_opportunities: int
    link_density: float
    broken_targets: List[str] = Field(default_factory=list)
