# bookmark_rag/domain/models.py
# Domain models must be pure (no I/O, no external libs)
from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from bookmark_rag.domain.types import Vector


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Bookmark:
    """
    Immutable snapshot of one saved post.

    - id:          stable external id (the post id from the scraper); de-duplication key
    - text:        post body; changing it invalidates the stored embedding
    - tags/folder_id/is_favorite: organisational fields, the only ones that change after import
    - deleted:     tombstone flag; tombstoned bookmarks are never retrieved
    """

    id: str
    author_handle: str
    author_name: str
    text: str
    posted_at: datetime
    saved_at: datetime | None = None
    url: str = ""
    media_urls: tuple[str, ...] = ()
    tags: frozenset[str] = frozenset()
    folder_id: str | None = None
    is_favorite: bool = False
    author_avatar: str | None = None
    deleted: bool = False

    @property
    def content_hash(self) -> str:
        return content_hash(self.text)

    def with_changes(self, **changes: object) -> Bookmark:
        return replace(self, **changes)  # type: ignore[arg-type]


@dataclass(frozen=True)
class EmbeddingRecord:
    """Stored vector; valid only while ``content_hash`` matches the bookmark text."""

    bookmark_id: str
    content_hash: str
    vector: Vector
    model: str = ""

    def is_current_for(self, bookmark: Bookmark) -> bool:
        return self.bookmark_id == bookmark.id and self.content_hash == bookmark.content_hash


@dataclass(frozen=True)
class DateRange:
    """Inclusive range; a missing bound is open."""

    start: datetime | None = None
    end: datetime | None = None

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, when: datetime) -> bool:
        if self.start is not None and when < self.start:
            return False
        if self.end is not None and when > self.end:
            return False
        return True


@dataclass(frozen=True)
class QueryIntent:
    keywords: tuple[str, ...] = ()
    authors: frozenset[str] | None = None
    date_range: DateRange = field(default_factory=DateRange)
    topic: str | None = None
    degraded: bool = False

    @classmethod
    def degraded_for(cls, question: str) -> QueryIntent:
        """Fallback when structured extraction is unavailable: the question is the only keyword."""
        keywords = (question,) if question.strip() else ()
        return cls(keywords=keywords, authors=None, date_range=DateRange(), degraded=True)

    @property
    def semantic_text(self) -> str:
        if self.topic:
            return self.topic
        return " ".join(self.keywords)

    def wants_semantic_pass(self) -> bool:
        return bool(self.topic) or not self.keywords or self.degraded

    def admits(self, bookmark: Bookmark) -> bool:
        """Author filter AND date range; both conjunctive, never relaxed."""
        if bookmark.deleted:
            return False
        if self.authors is not None and bookmark.author_handle.lower() not in self.authors:
            return False
        return self.date_range.contains(bookmark.posted_at)


class Provenance(str, Enum):
    LEXICAL = "lexical"
    SEMANTIC = "semantic"
    BOTH = "both"


@dataclass(frozen=True)
class RetrievalCandidate:
    bookmark: Bookmark
    score: float
    provenance: Provenance
    lexical_score: float = 0.0
    semantic_score: float = 0.0


def is_retrieval_empty(candidates: Sequence[RetrievalCandidate]) -> bool:
    """Empty context is a valid outcome, distinct from a failure."""
    return len(candidates) == 0


@dataclass(frozen=True)
class Citation:
    """A resolved inline citation marker, numbered in the order it closed."""

    bookmark_id: str
    author_handle: str
    order: int


class AnomalyKind(str, Enum):
    UNKNOWN_REFERENCE = "unknown_reference"
    MALFORMED_MARKER = "malformed_marker"
    UNTERMINATED_MARKER = "unterminated_marker"
    MALFORMED_FOLLOW_UP = "malformed_follow_up"


@dataclass(frozen=True)
class ParseAnomaly:
    kind: AnomalyKind
    raw: str


@dataclass(frozen=True)
class ParsedAnswer:
    plain_text: str
    citations: tuple[Citation, ...] = ()
    follow_ups: tuple[str, ...] = ()
    anomalies: tuple[ParseAnomaly, ...] = ()


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str
    citations: tuple[Citation, ...] = ()
    follow_ups: tuple[str, ...] = ()
    context_ids: tuple[str, ...] = ()
    complete: bool = True
    created_at: datetime | None = None


@dataclass
class Conversation:
    """Append-only sequence of turns for one chat session."""

    id: str = "default"
    turns: list[Turn] = field(default_factory=list)

    def append(self, turn: Turn) -> None:
        self.turns.append(turn)

    def __len__(self) -> int:
        return len(self.turns)

    @property
    def last_assistant_turn(self) -> Turn | None:
        for turn in reversed(self.turns):
            if turn.role is Role.ASSISTANT:
                return turn
        return None


class StreamState(str, Enum):
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class StreamingAnswerState:
    """Mutable accumulator owned by exactly one in-flight answer."""

    raw: str = ""
    display: str = ""
    emitted_citations: list[Citation] = field(default_factory=list)
    cursor: int = 0
    state: StreamState = StreamState.STREAMING

    @property
    def is_terminal(self) -> bool:
        return self.state is not StreamState.STREAMING

    @property
    def emitted_ids(self) -> frozenset[str]:
        return frozenset(c.bookmark_id for c in self.emitted_citations)
