"""Domain models for the note index."""

import datetime
import re
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator
from ulid import ULID

# Crockford base32, 26 chars, first char bounded so the value fits in 128 bits
ULID_PATTERN = re.compile(r"^[0-7][0-9A-HJKMNP-TV-Z]{25}$")

# A single topic path segment
TOPIC_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")

TAG_PATTERN = re.compile(r"^[a-z0-9_\-]+$")

REL_PATTERN = re.compile(r"^[a-z0-9\-]+$")

TOPIC_SEPARATOR = "/"


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: datetime.datetime) -> datetime.datetime:
    """Normalise a datetime to UTC, treating naive values as UTC already."""
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


def generate_id() -> str:
    """Generate a new time-sortable note id."""
    return str(ULID())


def normalize_note_id(value: str) -> str:
    """Validate a note id and return its canonical uppercase form.

    Raises:
        ValueError: If the value is not a syntactically valid ULID.
    """
    if not isinstance(value, str):
        raise ValueError(f"Note ID must be a string, got {type(value).__name__}")
    candidate = value.strip().upper()
    if not ULID_PATTERN.match(candidate):
        raise ValueError(f"Invalid note ID '{value}': expected a 26 character ULID")
    return str(ULID.from_str(candidate))


def normalize_topic(value: str) -> str:
    """Normalise a topic path.

    Whitespace around segments and empty segments (leading, trailing or
    doubled separators) are dropped. Case is preserved.

    Raises:
        ValueError: If a segment has invalid characters or nothing remains.
    """
    if not isinstance(value, str):
        raise ValueError(f"Topic must be a string, got {type(value).__name__}")
    segments = [s.strip() for s in value.split(TOPIC_SEPARATOR)]
    segments = [s for s in segments if s]
    if not segments:
        raise ValueError(f"Topic '{value}' has no path segments")
    for segment in segments:
        if not TOPIC_SEGMENT_PATTERN.match(segment):
            raise ValueError(
                f"Topic segment '{segment}' contains invalid characters. "
                "Only letters, digits, underscores, and hyphens are allowed."
            )
    return TOPIC_SEPARATOR.join(segments)


def normalize_tag(value: str) -> str:
    """Lowercase and validate a tag name."""
    if not isinstance(value, str):
        raise ValueError(f"Tag must be a string, got {type(value).__name__}")
    name = value.strip().lower()
    if not name:
        raise ValueError("Tag cannot be empty")
    if not TAG_PATTERN.match(name):
        raise ValueError(
            f"Tag '{value}' contains invalid characters. "
            "Only letters, digits, underscores, and hyphens are allowed."
        )
    return name


def normalize_rel(value: str) -> str:
    """Lowercase and validate a relationship label."""
    if not isinstance(value, str):
        raise ValueError(f"Rel must be a string, got {type(value).__name__}")
    rel = value.strip().lower()
    if not rel:
        raise ValueError("Rel cannot be empty")
    if not REL_PATTERN.match(rel):
        raise ValueError(
            f"Rel '{value}' contains invalid characters. "
            "Only letters, digits, and hyphens are allowed."
        )
    return rel


def _dedupe(values: List[Any]) -> List[Any]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _as_list(v: Any) -> List[Any]:
    if v is None:
        return []
    if isinstance(v, (str, dict)):
        return [v]
    return list(v)


class Topic(BaseModel):
    """A hierarchical topic path such as ``software/architecture``."""

    path: str = Field(..., description="Normalised topic path")

    model_config = {"frozen": True}

    @field_validator("path", mode="before")
    @classmethod
    def validate_path(cls, v: Any) -> str:
        return normalize_topic(v)

    @property
    def segments(self) -> List[str]:
        return self.path.split(TOPIC_SEPARATOR)

    @property
    def parent(self) -> Optional["Topic"]:
        """The enclosing topic, or None for a top-level topic."""
        segments = self.segments
        if len(segments) == 1:
            return None
        return Topic(path=TOPIC_SEPARATOR.join(segments[:-1]))

    def is_ancestor_of(self, other: "Topic") -> bool:
        return other.path.startswith(self.path + TOPIC_SEPARATOR)

    def __str__(self) -> str:
        return self.path


class Tag(BaseModel):
    """A flat tag for filtering notes."""

    name: str = Field(..., description="Tag name")

    model_config = {"frozen": True}

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> str:
        return normalize_tag(v)

    def __str__(self) -> str:
        """Return string representation of tag."""
        return self.name


class Link(BaseModel):
    """A typed link from one note to another.

    In frontmatter a link is written as ``{id, rel, note}``; the target
    does not have to exist in the index.
    """

    target_id: str = Field(..., alias="id", description="ID of the target note")
    rels: List[str] = Field(..., alias="rel", description="Relationship labels")
    context: Optional[str] = Field(
        default=None, alias="note", description="Optional free-text context"
    )

    model_config = {"frozen": True, "populate_by_name": True}

    @field_validator("target_id", mode="before")
    @classmethod
    def validate_target_id(cls, v: Any) -> str:
        return normalize_note_id(v)

    @field_validator("rels", mode="before")
    @classmethod
    def validate_rels(cls, v: Any) -> List[str]:
        rels = _dedupe([normalize_rel(r) for r in _as_list(v)])
        if not rels:
            raise ValueError("A link needs at least one rel")
        return rels

    @field_validator("context", mode="before")
    @classmethod
    def validate_context(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None


class Note(BaseModel):
    """Note metadata as declared in a file's frontmatter."""

    id: str = Field(..., description="Unique, immutable ULID of the note")
    title: str = Field(..., description="Title of the note")
    description: Optional[str] = Field(default=None, description="Short summary")
    created: datetime.datetime = Field(..., description="When the note was created (UTC)")
    modified: datetime.datetime = Field(
        ..., description="When the note was last modified (UTC)"
    )
    topics: List[Topic] = Field(default_factory=list, description="Topic paths")
    aliases: List[str] = Field(default_factory=list, description="Alternate names")
    tags: List[Tag] = Field(default_factory=list, description="Flat labels")
    links: List[Link] = Field(default_factory=list, description="Outgoing links")

    model_config = {"extra": "ignore", "populate_by_name": True}

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v: Any) -> str:
        return normalize_note_id(v)

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, v: Any) -> str:
        """Validate that the title is not empty."""
        if v is None:
            raise ValueError("Title cannot be empty")
        title = str(v).strip()
        if not title:
            raise ValueError("Title cannot be empty")
        return title

    @field_validator("description", mode="before")
    @classmethod
    def validate_description(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("created", "modified", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> Any:
        # YAML turns a bare 2024-01-15 into a date, not a datetime
        if isinstance(v, datetime.date) and not isinstance(v, datetime.datetime):
            return datetime.datetime(v.year, v.month, v.day, tzinfo=timezone.utc)
        return v

    @field_validator("created", "modified")
    @classmethod
    def validate_timezone(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)

    @field_validator("topics", mode="before")
    @classmethod
    def coerce_topics(cls, v: Any) -> List[Any]:
        return [t if isinstance(t, (Topic, dict)) else {"path": t} for t in _as_list(v)]

    @field_validator("aliases", mode="before")
    @classmethod
    def validate_aliases(cls, v: Any) -> List[str]:
        aliases = [str(a).strip() for a in _as_list(v) if a is not None]
        return _dedupe([a for a in aliases if a])

    @field_validator("tags", mode="before")
    @classmethod
    def coerce_tags(cls, v: Any) -> List[Any]:
        if isinstance(v, str):
            # "draft, api" is accepted as well as a YAML list
            v = [part for part in v.split(",") if part.strip()]
        return [t if isinstance(t, (Tag, dict)) else {"name": t} for t in _as_list(v)]

    @field_validator("topics", "tags")
    @classmethod
    def dedupe_labels(cls, v: List[Any]) -> List[Any]:
        return _dedupe(v)

    @field_validator("links", mode="before")
    @classmethod
    def coerce_links(cls, v: Any) -> List[Any]:
        return _as_list(v)

    @field_validator("links")
    @classmethod
    def merge_links(cls, links: List[Link]) -> List[Link]:
        # Links to the same target merge into one; rels union, first context wins
        merged: Dict[str, Link] = {}
        for link in links:
            existing = merged.get(link.target_id)
            if existing is None:
                merged[link.target_id] = link
                continue
            merged[link.target_id] = Link(
                target_id=existing.target_id,
                rels=existing.rels + [r for r in link.rels if r not in existing.rels],
                context=existing.context if existing.context is not None else link.context,
            )
        return list(merged.values())

    @property
    def topic_paths(self) -> List[str]:
        return [t.path for t in self.topics]

    @property
    def tag_names(self) -> List[str]:
        return [t.name for t in self.tags]

    @property
    def aliases_text(self) -> str:
        """Aliases joined with spaces, as stored for full-text search."""
        return " ".join(self.aliases)

    def get_linked_note_ids(self) -> Set[str]:
        """Get all note IDs that this note links to."""
        return {link.target_id for link in self.links}


class IndexedNote(Note):
    """A note as stored in the index, with its file location and body."""

    path: str = Field(..., description="POSIX path relative to the notes root")
    content_hash: str = Field(..., description="SHA-256 of the raw file bytes")
    body: str = Field(default="", description="Markdown body after the frontmatter")


@dataclass
class ParsedNote:
    """Output of the content reader for one file."""

    note: Note
    body: str
    content_hash: str


class IndexState(str, Enum):
    """Lifecycle state of an index store."""

    UNINITIALIZED = "uninitialized"
    BUILT = "built"


class FileResult(str, Enum):
    """Outcome of processing a single file during a build pass."""

    INDEXED = "indexed"
    SKIPPED = "skipped"
    ERROR = "error"


class BuildErrorKind(str, Enum):
    PARSE = "parse"
    IO = "io"
    ENCODING = "encoding"
    DUPLICATE_ID = "duplicate_id"


@dataclass
class BuildError:
    """A per-file failure recorded during a build pass."""

    path: str
    kind: BuildErrorKind
    message: str
    note_id: Optional[str] = None
    first_path: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class BuildResult:
    """Result of a full rebuild."""

    indexed: int = 0
    errors: List[BuildError] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def error_count(self) -> int:
        return len(self.errors)


@dataclass
class UpdateResult:
    """Result of an incremental update."""

    added: int = 0
    modified: int = 0
    removed: int = 0
    unchanged: int = 0
    errors: List[BuildError] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def total_changes(self) -> int:
        return self.added + self.modified + self.removed

    @property
    def has_changes(self) -> bool:
        return self.total_changes > 0


@dataclass
class SearchResult:
    """A ranked full-text match. Higher ``score`` is more relevant."""

    note: IndexedNote
    score: float
    snippet: str = ""


@dataclass
class TopicCount:
    """Note counts for a topic; ``total_count`` includes descendants."""

    topic: str
    exact_count: int
    total_count: int


@dataclass
class TagCount:
    tag: str
    count: int


@dataclass
class RelCount:
    rel: str
    count: int


class IntegrityIssueKind(str, Enum):
    BROKEN_LINK = "broken_link"
    ORPHAN = "orphan"
    DUPLICATE_ID = "duplicate_id"


@dataclass
class IntegrityIssue:
    """An advisory problem found by an integrity check."""

    kind: IntegrityIssueKind
    note_id: str
    path: Optional[str] = None
    target_id: Optional[str] = None
    message: str = ""


@dataclass
class IntegrityReport:
    """Advisory results of ``integrity_check``."""

    broken_links: List[IntegrityIssue] = field(default_factory=list)
    orphans: List[IntegrityIssue] = field(default_factory=list)
    duplicate_ids: List[IntegrityIssue] = field(default_factory=list)
    fts_ok: bool = True
    repaired_links: int = 0
    fts_rebuilt: bool = False

    @property
    def issues(self) -> List[IntegrityIssue]:
        return self.broken_links + self.orphans + self.duplicate_ids

    @property
    def is_clean(self) -> bool:
        return not self.issues and self.fts_ok
