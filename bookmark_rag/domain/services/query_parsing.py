"""Pure helpers turning extracted search parameters into a QueryIntent."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from bookmark_rag.domain.models import DateRange, QueryIntent

# Words the analysis prompt asks the model to drop; re-applied here because models forget.
STOP_WORDS = frozenset(
    {
        "tell", "show", "find", "bookmarks", "bookmark", "tweets", "tweet", "saved",
        "posts", "post", "about", "what", "which", "from", "the", "and", "me", "my",
    }
)

_UNIT_DAYS = {
    "day": 1,
    "days": 1,
    "week": 7,
    "weeks": 7,
    "month": 30,
    "months": 30,
    "year": 365,
    "years": 365,
}

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw).strip()


def first_json_object(raw: str) -> dict[str, Any] | None:
    """Return the first JSON object embedded in ``raw``, or None."""
    text = strip_code_fences(raw)
    start = text.find("{")
    while start >= 0:
        try:
            obj, _ = json.JSONDecoder().raw_decode(text[start:])
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        return obj if isinstance(obj, dict) else None
    return None


def resolve_relative_range(unit: str, amount: int, now: datetime) -> DateRange:
    """``last <amount> <unit>`` as an inclusive range ending now; unknown units count as months."""
    days = _UNIT_DAYS.get(unit.strip().lower(), 30)
    return DateRange(start=now - timedelta(days=days * max(amount, 0)), end=None)


def clean_keywords(keywords: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in keywords:
        kw = raw.strip().lstrip("@#").strip()
        key = kw.casefold()
        if not kw or key in STOP_WORDS or key in seen:
            continue
        seen.add(key)
        out.append(kw)
    return tuple(out)


def normalize_handles(handles: Iterable[str]) -> frozenset[str]:
    return frozenset(h.strip().lstrip("@").lower() for h in handles if h.strip().lstrip("@"))


def build_intent(
    question: str,
    keywords: Sequence[str],
    authors: Sequence[str] | None,
    date_range: DateRange | None,
    topics: Sequence[str] | None,
) -> QueryIntent:
    """
    Assemble an intent, degrading when nothing useful was extracted.

    - no keywords, no authors, no date range -> degraded intent
    - no keywords and no topics -> the question itself becomes the semantic topic
    """
    kws = clean_keywords(keywords)
    handles = normalize_handles(authors or ())
    rng = date_range or DateRange()
    if not kws and not handles and rng.is_unbounded:
        return QueryIntent.degraded_for(question)
    topic = " ".join(t.strip() for t in (topics or ()) if t.strip()) or None
    if topic is None and not kws:
        topic = question
    return QueryIntent(
        keywords=kws,
        authors=handles or None,
        date_range=rng,
        topic=topic,
    )
