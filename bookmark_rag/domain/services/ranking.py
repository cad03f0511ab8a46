# bookmark_rag/domain/services/ranking.py
# Pure domain services: no I/O, deterministic, no external libraries.
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from bookmark_rag.domain.models import Bookmark, Provenance, QueryIntent, RetrievalCandidate

_TOKEN_RE = re.compile(r"[\w#@']+", re.UNICODE)
_MIN_TOKEN_LEN = 3

# Default merge weights; lexical exact matches are favoured.
LEXICAL_WEIGHT = 0.6
SEMANTIC_WEIGHT = 0.4


def tokenize(text: str) -> list[str]:
    return [t.strip("#@'").casefold() for t in _TOKEN_RE.findall(text) if t.strip("#@'")]


def significant_tokens(text: str) -> list[str]:
    return [t for t in tokenize(text) if len(t) >= _MIN_TOKEN_LEN]


def keyword_needles(terms: Sequence[str]) -> list[str]:
    """Whole terms plus their significant tokens, case-folded; storage pre-filters on any of them."""
    needles: list[str] = []
    for term in terms:
        folded = term.strip().casefold()
        if not folded:
            continue
        needles.append(folded)
        needles.extend(significant_tokens(folded))
    return list(dict.fromkeys(needles))


def _haystack(bookmark: Bookmark) -> str:
    return f"{bookmark.text}\n{bookmark.author_handle}\n{bookmark.author_name}".casefold()


def keyword_matches(keyword: str, haystack: str, haystack_tokens: frozenset[str]) -> bool:
    """Case-insensitive substring match, or every significant token present for multi-word keywords."""
    needle = keyword.strip().casefold()
    if not needle:
        return False
    if needle in haystack:
        return True
    tokens = significant_tokens(needle)
    if len(tokens) < 2:
        return False
    return all(t in haystack_tokens for t in tokens)


def count_keyword_matches(keywords: Sequence[str], bookmark: Bookmark) -> int:
    """Number of distinct keywords matching text or author."""
    haystack = _haystack(bookmark)
    tokens = frozenset(tokenize(haystack))
    distinct = {k.strip().casefold() for k in keywords if k.strip()}
    return sum(1 for k in distinct if keyword_matches(k, haystack, tokens))


@dataclass(frozen=True)
class LexicalHit:
    bookmark: Bookmark
    matches: int
    normalized: float


def lexical_pass(intent: QueryIntent, bookmarks: Iterable[Bookmark]) -> list[LexicalHit]:
    """
    Score bookmarks by distinct matching keywords.

    - Filters (author, date range) are applied before scoring.
    - Order: matches desc, then posted_at desc (more recent first), then id for determinism.
    - With an author filter but no keywords, every admitted bookmark by that author is a
      zero-score hit ordered by recency.
    """
    keywords = [k for k in intent.keywords if k.strip()]
    distinct = len({k.strip().casefold() for k in keywords})
    author_only = not keywords and intent.authors is not None
    seen: set[str] = set()
    hits: list[LexicalHit] = []
    for bm in bookmarks:
        if bm.id in seen or not intent.admits(bm):
            continue
        seen.add(bm.id)
        if author_only:
            hits.append(LexicalHit(bm, 0, 0.0))
            continue
        n = count_keyword_matches(keywords, bm)
        if n > 0:
            hits.append(LexicalHit(bm, n, n / distinct))
    hits.sort(key=lambda h: h.bookmark.id)
    hits.sort(key=lambda h: (h.matches, h.bookmark.posted_at), reverse=True)
    return hits


@dataclass(frozen=True)
class SemanticHit:
    bookmark: Bookmark
    similarity: float


def merge_passes(
    lexical: Sequence[LexicalHit],
    semantic: Sequence[SemanticHit],
    top_k: int,
    lexical_weight: float = LEXICAL_WEIGHT,
    semantic_weight: float = SEMANTIC_WEIGHT,
) -> list[RetrievalCandidate]:
    """
    Merge both passes into one ranked list.

    Single-pass items score ``weight * normalized`` on a 0..1 scale; items found by both
    passes score the sum, so a ``both`` candidate never scores below either pass alone.
    The sort is stable: equal scores keep lexical order first, then semantic order.
    """
    if top_k <= 0:
        return []
    sem_by_id = {h.bookmark.id: h for h in semantic}
    merged: list[RetrievalCandidate] = []
    taken: set[str] = set()

    for hit in lexical:
        lex = lexical_weight * hit.normalized
        sem_hit = sem_by_id.get(hit.bookmark.id)
        if sem_hit is not None:
            sem = semantic_weight * _clamp(sem_hit.similarity)
            merged.append(
                RetrievalCandidate(hit.bookmark, lex + sem, Provenance.BOTH, lex, sem)
            )
        else:
            merged.append(RetrievalCandidate(hit.bookmark, lex, Provenance.LEXICAL, lex, 0.0))
        taken.add(hit.bookmark.id)

    for sem_hit in semantic:
        if sem_hit.bookmark.id in taken:
            continue
        sem = semantic_weight * _clamp(sem_hit.similarity)
        merged.append(RetrievalCandidate(sem_hit.bookmark, sem, Provenance.SEMANTIC, 0.0, sem))
        taken.add(sem_hit.bookmark.id)

    merged.sort(key=lambda c: c.score, reverse=True)
    return merged[:top_k]


def _clamp(x: float) -> float:
    return min(max(x, 0.0), 1.0)
