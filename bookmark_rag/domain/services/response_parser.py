"""Incremental parser for the structure embedded in generated answers.

Two grammars live inside otherwise free text:

- citation markers ``[TWEET:<id>]@<handle>[/TWEET]``, replaced by ``<citation:<id>>``
- a follow-up section introduced by ``---FOLLOWUPS---``, one question per line

The parser is an explicit state machine (plain, inside_citation, inside_followups)
over a growing buffer. Text that could still turn into a marker is held back, so a
half-received marker never leaks into the display text.
"""

from __future__ import annotations

import re
from collections.abc import Collection
from dataclasses import dataclass
from enum import Enum

from bookmark_rag.domain.models import (
    AnomalyKind,
    Citation,
    ParseAnomaly,
    ParsedAnswer,
)

CITATION_OPEN = "[TWEET:"
CITATION_CLOSE = "[/TWEET]"
FOLLOWUP_SEPARATOR = "---FOLLOWUPS---"
MAX_MARKER_LENGTH = 256
_LONGEST_PENDING_TOKEN = max(len(CITATION_CLOSE), len(FOLLOWUP_SEPARATOR))

_MARKER_BODY_RE = re.compile(r"^\s*([A-Za-z0-9_\-]+)\s*\]\s*@?\s*([A-Za-z0-9_.]*)\s*$")
_BULLET_RE = re.compile(r"^(?:[-*•]\s*|\d{1,2}[.)]\s*)")


def citation_placeholder(bookmark_id: str) -> str:
    return f"<citation:{bookmark_id}>"


class ParserState(str, Enum):
    PLAIN = "plain"
    INSIDE_CITATION = "inside_citation"
    INSIDE_FOLLOWUPS = "inside_followups"


@dataclass(frozen=True)
class ParseUpdate:
    """What became displayable since the previous call."""

    text: str = ""
    citations: tuple[Citation, ...] = ()
    anomalies: tuple[ParseAnomaly, ...] = ()
    follow_ups: tuple[str, ...] | None = None  # set only by finish()


def _held_prefix_length(tail: str) -> int:
    """Length of the longest suffix of ``tail`` that may still grow into a marker token."""
    best = 0
    for token in (CITATION_OPEN, FOLLOWUP_SEPARATOR):
        for n in range(min(len(token) - 1, len(tail)), 0, -1):
            if tail.endswith(token[:n]):
                best = max(best, n)
                break
    return best


class ResponseStructureParser:
    def __init__(
        self,
        allowed_ids: Collection[str] | None = None,
        already_emitted: Collection[str] = (),
        follow_up_limit: int | None = None,
    ) -> None:
        self._allowed = frozenset(allowed_ids) if allowed_ids is not None else None
        self._emitted: set[str] = set(already_emitted)
        self._follow_up_limit = follow_up_limit
        self._buffer = ""
        self._cursor = 0
        self._state = ParserState.PLAIN
        self._marker_start = 0
        self._followups_start = 0
        self._ws_hold = ""
        self._started = False
        self._order = len(self._emitted)
        self._display: list[str] = []
        self._citations: list[Citation] = []
        self._anomalies: list[ParseAnomaly] = []
        self._terminal = False

    # ===== State =====

    @property
    def state(self) -> ParserState:
        return self._state

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def display_text(self) -> str:
        return "".join(self._display)

    @property
    def citations(self) -> tuple[Citation, ...]:
        return tuple(self._citations)

    @property
    def anomalies(self) -> tuple[ParseAnomaly, ...]:
        return tuple(self._anomalies)

    # ===== Incremental API =====

    def feed(self, chunk: str) -> ParseUpdate:
        if self._terminal:
            raise RuntimeError("parser already finished")
        self._buffer += chunk
        out: list[str] = []
        cites: list[Citation] = []
        anomalies: list[ParseAnomaly] = []
        self._advance(out, cites, anomalies)
        return self._update(out, cites, anomalies)

    def finish(self) -> ParseUpdate:
        """Stream completed: flush held text verbatim and finalize follow-ups."""
        out: list[str] = []
        anomalies: list[ParseAnomaly] = []
        follow_ups: tuple[str, ...] = ()
        if self._state is ParserState.INSIDE_FOLLOWUPS:
            follow_ups = self._finalize_follow_ups(self._buffer[self._followups_start :], anomalies)
        else:
            self._flush_tail(out, anomalies)
        self._terminal = True
        return self._update(out, [], anomalies, follow_ups)

    def abort(self) -> ParseUpdate:
        """Stream failed or was cancelled: flush held text, never produce follow-ups."""
        out: list[str] = []
        anomalies: list[ParseAnomaly] = []
        if self._state is not ParserState.INSIDE_FOLLOWUPS:
            self._flush_tail(out, anomalies)
        self._terminal = True
        return self._update(out, [], anomalies)

    def result(self, follow_ups: tuple[str, ...] = ()) -> ParsedAnswer:
        return ParsedAnswer(
            plain_text=self.display_text,
            citations=self.citations,
            follow_ups=follow_ups,
            anomalies=self.anomalies,
        )

    # ===== Machine =====

    def _advance(self, out: list[str], cites: list[Citation], anomalies: list[ParseAnomaly]) -> None:
        buf = self._buffer
        while self._cursor < len(buf):
            if self._state is ParserState.PLAIN:
                i_open = buf.find(CITATION_OPEN, self._cursor)
                i_sep = buf.find(FOLLOWUP_SEPARATOR, self._cursor)
                found = [i for i in (i_open, i_sep) if i >= 0]
                if not found:
                    hold = _held_prefix_length(buf[self._cursor :])
                    end = len(buf) - hold
                    self._emit(buf[self._cursor : end], out)
                    self._cursor = end
                    return
                nxt = min(found)
                self._emit(buf[self._cursor : nxt], out)
                if nxt == i_sep:
                    self._state = ParserState.INSIDE_FOLLOWUPS
                    self._cursor = nxt + len(FOLLOWUP_SEPARATOR)
                    self._followups_start = self._cursor
                else:
                    self._state = ParserState.INSIDE_CITATION
                    self._marker_start = nxt
                    self._cursor = nxt + len(CITATION_OPEN)

            elif self._state is ParserState.INSIDE_CITATION:
                close = buf.find(CITATION_CLOSE, self._cursor)
                sep = buf.find(FOLLOWUP_SEPARATOR, self._cursor)
                if sep >= 0 and (close < 0 or sep < close):
                    # The follow-up section starts before the marker closed.
                    raw = buf[self._marker_start : sep]
                    anomalies.append(ParseAnomaly(AnomalyKind.UNTERMINATED_MARKER, raw))
                    self._emit(raw, out)
                    self._state = ParserState.INSIDE_FOLLOWUPS
                    self._cursor = sep + len(FOLLOWUP_SEPARATOR)
                    self._followups_start = self._cursor
                    continue
                if close < 0:
                    if len(buf) - self._marker_start > MAX_MARKER_LENGTH:
                        # Runaway marker: give the opening token back as plain text.
                        anomalies.append(
                            ParseAnomaly(AnomalyKind.MALFORMED_MARKER, buf[self._marker_start : self._marker_start + MAX_MARKER_LENGTH])
                        )
                        self._emit(CITATION_OPEN, out)
                        self._cursor = self._marker_start + len(CITATION_OPEN)
                        self._state = ParserState.PLAIN
                        continue
                    # keep the marker pending; re-scan only the new tail next time
                    self._cursor = max(self._cursor, len(buf) - _LONGEST_PENDING_TOKEN + 1)
                    return
                inner = buf.find(CITATION_OPEN, self._marker_start + len(CITATION_OPEN), close)
                if inner >= 0:
                    # A stray opening token: show it verbatim and restart at the inner one.
                    stray = buf[self._marker_start : inner]
                    anomalies.append(ParseAnomaly(AnomalyKind.MALFORMED_MARKER, stray))
                    self._emit(stray, out)
                    self._marker_start = inner
                    self._cursor = inner + len(CITATION_OPEN)
                    continue
                end = close + len(CITATION_CLOSE)
                self._resolve_marker(buf[self._marker_start : end], out, cites, anomalies)
                self._cursor = end
                self._state = ParserState.PLAIN

            else:  # INSIDE_FOLLOWUPS: captured separately, finalized on finish()
                self._cursor = len(buf)
                return

    def _resolve_marker(
        self,
        marker: str,
        out: list[str],
        cites: list[Citation],
        anomalies: list[ParseAnomaly],
    ) -> None:
        body = marker[len(CITATION_OPEN) : -len(CITATION_CLOSE)]
        m = _MARKER_BODY_RE.match(body)
        if m is None:
            anomalies.append(ParseAnomaly(AnomalyKind.MALFORMED_MARKER, marker))
            self._emit(marker, out)
            return
        ref_id, handle = m.group(1), m.group(2)
        if self._allowed is not None and ref_id not in self._allowed:
            anomalies.append(ParseAnomaly(AnomalyKind.UNKNOWN_REFERENCE, marker))
            self._emit(marker, out)
            return
        self._emit(citation_placeholder(ref_id), out)
        if ref_id not in self._emitted:
            self._emitted.add(ref_id)
            self._order += 1
            cites.append(Citation(bookmark_id=ref_id, author_handle=handle, order=self._order))

    def _flush_tail(self, out: list[str], anomalies: list[ParseAnomaly]) -> None:
        if self._state is ParserState.INSIDE_CITATION:
            raw = self._buffer[self._marker_start :]
            anomalies.append(ParseAnomaly(AnomalyKind.UNTERMINATED_MARKER, raw))
            self._emit(raw, out)
        else:
            self._emit(self._buffer[self._cursor :], out)
        self._cursor = len(self._buffer)
        self._state = ParserState.PLAIN

    def _emit(self, text: str, out: list[str]) -> None:
        """Append display text; leading and trailing whitespace of the body is held back."""
        if not text:
            return
        combined = self._ws_hold + text
        if not self._started:
            combined = combined.lstrip()
        stripped = combined.rstrip()
        self._ws_hold = combined[len(stripped) :]
        if stripped:
            self._started = True
            out.append(stripped)

    def _finalize_follow_ups(self, section: str, anomalies: list[ParseAnomaly]) -> tuple[str, ...]:
        questions: list[str] = []
        for line in section.splitlines():
            raw = line.strip()
            if not raw:
                continue
            cleaned = _BULLET_RE.sub("", raw, count=1).strip()
            if not cleaned:
                anomalies.append(ParseAnomaly(AnomalyKind.MALFORMED_FOLLOW_UP, raw))
                continue
            questions.append(cleaned)
        if self._follow_up_limit is not None:
            questions = questions[: self._follow_up_limit]
        return tuple(questions)

    def _update(
        self,
        out: list[str],
        cites: list[Citation],
        anomalies: list[ParseAnomaly],
        follow_ups: tuple[str, ...] | None = None,
    ) -> ParseUpdate:
        text = "".join(out)
        self._display.append(text)
        self._citations.extend(cites)
        self._anomalies.extend(anomalies)
        return ParseUpdate(
            text=text,
            citations=tuple(cites),
            anomalies=tuple(anomalies),
            follow_ups=follow_ups,
        )


def extract(
    buffer: str,
    already_emitted: Collection[str] = (),
    allowed_ids: Collection[str] | None = None,
    terminal: bool = True,
    follow_up_limit: int | None = None,
) -> ParsedAnswer:
    """One-shot parse of a buffer.

    Returns the display text, the citations not in ``already_emitted`` and, when
    ``terminal``, the follow-up questions.

    Examples:
        >>> extract("A [TWEET:42]@bob[/TWEET] B ---FOLLOWUPS---\\nQ1?\\nQ2?").plain_text
        'A <citation:42> B'
    """
    parser = ResponseStructureParser(allowed_ids, already_emitted, follow_up_limit)
    parser.feed(buffer)
    if not terminal:
        return parser.result()
    update = parser.finish()
    return parser.result(update.follow_ups or ())
