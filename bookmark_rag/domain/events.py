"""Answer events published to the presentation layer, in production order.

Every turn ends with exactly one terminal event: Completed, Cancelled or Failed.
"""

from __future__ import annotations

from dataclasses import dataclass

from bookmark_rag.domain.errors import TransportErrorKind
from bookmark_rag.domain.models import Citation, ParsedAnswer, QueryIntent, RetrievalCandidate


@dataclass(frozen=True)
class ContextReady:
    intent: QueryIntent
    candidates: tuple[RetrievalCandidate, ...]


@dataclass(frozen=True)
class TextDelta:
    text: str
    raw_length: int  # raw buffer length consumed so far; never decreases


@dataclass(frozen=True)
class CitationDetected:
    citation: Citation


@dataclass(frozen=True)
class FollowUpsReady:
    questions: tuple[str, ...]


@dataclass(frozen=True)
class Completed:
    answer: ParsedAnswer


@dataclass(frozen=True)
class Cancelled:
    partial_text: str


@dataclass(frozen=True)
class Failed:
    kind: TransportErrorKind
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


AnswerEvent = ContextReady | TextDelta | CitationDetected | FollowUpsReady | Completed | Cancelled | Failed

TERMINAL_EVENTS = (Completed, Cancelled, Failed)


def is_terminal(event: AnswerEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)
